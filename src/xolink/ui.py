"""FastAPI surface exposing the session broker to browser clients."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .client import Broker, GameClient, create_broker
from .config import get_settings
from .errors import (
    InvalidStateTransition,
    NotFoundOrFull,
    NotParticipant,
    NotSignedIn,
    StoreError,
    ValidationRejection,
    XOLinkError,
)
from .lifecycle import SessionView
from .profiles import LocalIdentityProvider

logger = logging.getLogger(__name__)

BROKER: Broker = create_broker()
app = FastAPI(title="XOLink", description="Real-time tic-tac-toe sessions and matchmaking")

ERROR_STATUS = (
    (NotSignedIn, 401),
    (NotParticipant, 403),
    (NotFoundOrFull, 404),
    (InvalidStateTransition, 409),
    (ValidationRejection, 400),
    (StoreError, 503),
)


class MoveRequest(BaseModel):
    """Request payload for placing a mark."""

    model_config = ConfigDict(populate_by_name=True)

    cell_index: int = Field(alias="cellIndex", ge=0, le=8)


class RematchRequest(BaseModel):
    """Optional rematch payload naming the round the caller saw finish."""

    model_config = ConfigDict(populate_by_name=True)

    seen_round: Optional[int] = Field(default=None, alias="round", ge=0)


def _client_for(uid: Optional[str], handle: Optional[str]) -> GameClient:
    identity = LocalIdentityProvider(profiles=BROKER.profiles)
    if uid:
        identity.sign_in(uid.strip(), handle)
    return GameClient(BROKER, identity)


def get_client(
    x_user_id: Optional[str] = Header(default=None),
    x_user_handle: Optional[str] = Header(default=None),
) -> GameClient:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return _client_for(x_user_id, x_user_handle)


@app.exception_handler(XOLinkError)
async def broker_error_handler(request: Request, exc: XOLinkError) -> JSONResponse:
    status = next((code for kind, code in ERROR_STATUS if isinstance(exc, kind)), 500)
    return JSONResponse(status_code=status, content={"detail": str(exc)})


def _serialize_view(view: SessionView) -> Dict[str, object]:
    def player(ref) -> Optional[Dict[str, Optional[str]]]:
        return ref.to_dict() if ref else None

    return {
        "id": view.session_id,
        "status": view.status,
        "statusText": view.status_text,
        "board": list(view.board),
        "turn": view.turn,
        "symbol": view.symbol,
        "yourTurn": view.your_turn,
        "winner": view.winner,
        "winningLine": list(view.winning_line) if view.winning_line else None,
        "playerX": player(view.player_x),
        "playerO": player(view.player_o),
        "mode": view.mode,
        "round": view.round,
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/session")
def create_session(client: GameClient = Depends(get_client)) -> Dict[str, object]:
    session_id = client.create_game()
    return _serialize_view(client.view(session_id))


@app.get("/api/session/{session_id}")
def get_session(session_id: str, client: GameClient = Depends(get_client)) -> Dict[str, object]:
    return _serialize_view(client.view(session_id))


@app.delete("/api/session/{session_id}")
def cancel_session(session_id: str, client: GameClient = Depends(get_client)) -> Dict[str, bool]:
    return {"cancelled": client.cancel_game(session_id)}


@app.post("/api/session/{session_id}/join")
def join_session(session_id: str, client: GameClient = Depends(get_client)) -> Dict[str, object]:
    session = client.join_game(session_id)
    return _serialize_view(client.view(session.id))


@app.post("/api/session/{session_id}/move")
def make_move(
    session_id: str, request: MoveRequest, client: GameClient = Depends(get_client)
) -> Dict[str, object]:
    accepted = client.move(session_id, request.cell_index) is not None
    state = _serialize_view(client.view(session_id))
    state["accepted"] = accepted
    return state


@app.post("/api/session/{session_id}/rematch")
def rematch(
    session_id: str,
    request: Optional[RematchRequest] = None,
    client: GameClient = Depends(get_client),
) -> Dict[str, object]:
    client.rematch(session_id, request.seen_round if request else None)
    return _serialize_view(client.view(session_id))


@app.post("/api/queue")
def find_match(client: GameClient = Depends(get_client)) -> Dict[str, object]:
    ticket = client.find_match()
    return {"status": ticket.state, "sessionId": ticket.session_id}


@app.get("/api/queue")
def poll_match(client: GameClient = Depends(get_client)) -> Dict[str, object]:
    session_id = client.poll_match()
    if session_id:
        status = "matched"
    elif client.in_queue():
        status = "queued"
    else:
        status = "idle"
    return {"status": status, "sessionId": session_id}


@app.delete("/api/queue")
def cancel_match(client: GameClient = Depends(get_client)) -> Dict[str, str]:
    client.cancel_match()
    return {"status": "cancelled"}


@app.get("/api/profile/{uid}")
def get_profile(uid: str) -> Dict[str, object]:
    profile = BROKER.profiles.get(uid)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {
        "uid": profile.uid,
        "handle": profile.handle,
        "points": profile.points,
        "level": profile.level,
        "gameHistory": [record.to_dict() for record in BROKER.profiles.history(uid)],
    }


@app.websocket("/ws/session/{session_id}")
async def session_updates(
    websocket: WebSocket, session_id: str, uid: Optional[str] = None
) -> None:
    """Push a fresh view on every update; accept moves and rematches."""

    await websocket.accept()
    client = _client_for(uid, None)
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue()

    def on_view(view: Optional[SessionView]) -> None:
        loop.call_soon_threadsafe(updates.put_nowait, view)

    async def pump() -> None:
        while True:
            view = await updates.get()
            if view is None:
                await websocket.send_json({"type": "closed", "id": session_id})
                await websocket.close()
                return
            await websocket.send_json({"type": "state", **_serialize_view(view)})

    unsubscribe = client.watch(session_id, on_view)
    sender = asyncio.create_task(pump())
    try:
        while True:
            message = await websocket.receive_json()
            kind = message.get("type") if isinstance(message, dict) else None
            try:
                if kind == "move":
                    move = MoveRequest.model_validate(message)
                    client.move(session_id, move.cell_index)
                elif kind == "rematch":
                    request = RematchRequest.model_validate(message)
                    client.rematch(session_id, request.seen_round)
                else:
                    await websocket.send_json(
                        {"type": "error", "message": "Unsupported message"}
                    )
            except ValidationError as exc:
                reason = exc.errors()[0]["msg"]
                await websocket.send_json(
                    {"type": "error", "message": f"Invalid {kind} message: {reason}"}
                )
            except XOLinkError as exc:
                await websocket.send_json({"type": "error", "message": str(exc)})
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        sender.cancel()


@app.websocket("/ws/queue")
async def queue_updates(
    websocket: WebSocket, uid: str, handle: Optional[str] = None
) -> None:
    """Enter the queue and report the match, or cancel on disconnect."""

    await websocket.accept()
    client = _client_for(uid, handle)
    try:
        ticket = client.find_match()
    except XOLinkError as exc:
        await websocket.send_json({"type": "error", "message": str(exc)})
        await websocket.close()
        return

    if ticket.matched:
        await websocket.send_json({"type": "matched", "sessionId": ticket.session_id})
        await websocket.close()
        return

    await websocket.send_json({"type": "queued"})
    waiter = asyncio.create_task(ticket.wait(get_settings().match_timeout_seconds))
    listener = asyncio.create_task(websocket.receive_json())
    done, _ = await asyncio.wait({waiter, listener}, return_when=asyncio.FIRST_COMPLETED)

    if waiter in done:
        listener.cancel()
        error = waiter.exception()
        if error is None:
            await websocket.send_json({"type": "matched", "sessionId": waiter.result()})
        elif isinstance(error, asyncio.TimeoutError):
            ticket.cancel()
            await websocket.send_json({"type": "timeout"})
        else:
            ticket.cancel()
            logger.warning("Waiting for a match failed for %s: %s", uid, error)
            await websocket.send_json({"type": "error", "message": str(error)})
        await websocket.close()
        return

    # Any client message, or a disconnect, ends the wait.
    waiter.cancel()
    ticket.cancel()
    if listener.exception() is None:
        await websocket.send_json({"type": "cancelled"})
        await websocket.close()
