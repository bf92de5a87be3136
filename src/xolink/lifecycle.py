"""Session lifecycle: creation, moves, rematches and client-side views."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from .board import BOARD_SIZE, DRAW, Cell, Mark, X, empty_board, evaluate, other
from .errors import InvalidStateTransition, NotFoundOrFull
from .profiles import ResultRecorder
from .session_store import (
    FINISHED,
    FRIEND,
    PLAYING,
    RANDOM,
    WAITING,
    PlayerRef,
    Session,
    SessionStore,
)
from .store import SharedStore, Unsubscribe

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionView:
    """What one client renders for a session snapshot."""

    session_id: str
    status: str
    status_text: str
    board: Tuple[Cell, ...]
    turn: Mark
    symbol: Optional[Mark]
    your_turn: bool
    winner: Optional[str]
    winning_line: Optional[Tuple[int, int, int]]
    player_x: PlayerRef
    player_o: Optional[PlayerRef]
    mode: str
    round: int


def derive_view(session: Session, viewer_uid: Optional[str]) -> SessionView:
    """Build a view purely from ``session`` as seen by ``viewer_uid``."""

    symbol = session.symbol_for(viewer_uid)
    outcome = evaluate(session.board)

    if session.status == WAITING:
        text = "Waiting for opponent..."
    elif session.status == PLAYING:
        text = "Your turn" if symbol == session.turn else f"Waiting for {session.turn}..."
    elif session.winner == DRAW:
        text = "It's a Draw!"
    elif symbol is None:
        text = f"Winner: {session.winner}"
    elif session.winner == symbol:
        text = "You Won!"
    else:
        text = "You Lost!"

    return SessionView(
        session_id=session.id or "",
        status=session.status,
        status_text=text,
        board=tuple(session.board),
        turn=session.turn,
        symbol=symbol,
        your_turn=session.status == PLAYING and symbol == session.turn,
        winner=session.winner,
        winning_line=outcome.line,
        player_x=session.player_x,
        player_o=session.player_o,
        mode=session.mode,
        round=session.round,
    )


class SessionManager:
    """Applies lifecycle transitions to sessions in the shared store.

    Every transition is a conditional update on the session path, so the
    checks and the write see the same snapshot.
    """

    def __init__(self, store: SharedStore, recorder: Optional[ResultRecorder] = None):
        self.sessions = SessionStore(store)
        self.recorder = recorder

    def create_session(
        self, creator_id: str, creator_handle: Optional[str] = None, mode: str = FRIEND
    ) -> str:
        session = self.sessions.create(
            Session(player_x=PlayerRef(creator_id, creator_handle), mode=mode)
        )
        logger.info("Created session %s for %s", session.id, creator_id)
        return session.id

    def start_session(
        self, player_x: PlayerRef, player_o: PlayerRef, mode: str = RANDOM
    ) -> str:
        """Create a session that already has both players and is playing."""

        session = self.sessions.create(
            Session(player_x=player_x, player_o=player_o, status=PLAYING, mode=mode)
        )
        logger.info(
            "Started session %s: %s (X) vs %s (O)", session.id, player_x.uid, player_o.uid
        )
        return session.id

    def get(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFoundOrFull(session_id, "Game not found")
        return session

    def attempt_move(self, session_id: str, mover_id: str, cell_index: int) -> Optional[Session]:
        """Apply a move, or return ``None`` when it is rejected.

        A rejected move writes nothing. When the move ends the game the
        result recorder runs once, from this call only.
        """

        if not 0 <= cell_index < BOARD_SIZE:
            logger.debug("Rejected move to cell %s in %s", cell_index, session_id)
            return None

        def apply(current: Optional[Session]) -> Optional[Session]:
            if current is None or current.status != PLAYING:
                return None
            if current.board[cell_index] is not None:
                return None
            if current.symbol_for(mover_id) != current.turn:
                return None
            board = list(current.board)
            board[cell_index] = current.turn
            outcome = evaluate(board)
            return replace(
                current,
                board=board,
                turn=other(current.turn),
                status=FINISHED if outcome.finished else PLAYING,
                winner=outcome.winner,
            )

        committed, session = self.sessions.transact(session_id, apply)
        if not committed:
            logger.debug("Rejected move by %s to cell %s in %s", mover_id, cell_index, session_id)
            return None

        if session.status == FINISHED:
            logger.info("Session %s finished, winner %s", session_id, session.winner)
            if self.recorder is not None:
                self.recorder.record_finish(session)
        return session

    def rematch(self, session_id: str, seen_round: Optional[int] = None) -> Session:
        """Reset a finished game and bump its round.

        ``seen_round`` is the round the caller saw finish. When another
        player's rematch already moved the game to the next round, that game
        is returned instead of failing. Any other unfinished game raises
        :class:`InvalidStateTransition`.
        """

        def apply(current: Optional[Session]) -> Optional[Session]:
            if current is None or current.status != FINISHED:
                return None
            if seen_round is not None and current.round != seen_round:
                return None
            return replace(
                current,
                board=empty_board(),
                status=PLAYING,
                turn=X,
                winner=None,
                round=current.round + 1,
            )

        committed, session = self.sessions.transact(session_id, apply)
        if committed:
            logger.info("Rematch started in session %s, round %s", session_id, session.round)
            return session
        if session is None:
            raise NotFoundOrFull(session_id, "Game not found")
        if (
            seen_round is not None
            and session.round == seen_round + 1
            and session.status == PLAYING
        ):
            # Another player's rematch landed first.
            return session
        raise InvalidStateTransition(
            f"Session {session_id} is {session.status}, rematch needs a finished game"
        )

    def cancel_waiting(self, session_id: str, creator_id: str) -> bool:
        """Delete a friend session nobody has joined yet."""

        removed = self.sessions.delete_if(
            session_id,
            lambda s: s.status == WAITING and s.player_x.uid == creator_id,
        )
        if removed:
            logger.info("Cancelled waiting session %s", session_id)
        return removed

    def watch(
        self,
        session_id: str,
        viewer_uid: Optional[str],
        callback: Callable[[Optional[SessionView]], None],
    ) -> Unsubscribe:
        """Long-lived subscription delivering a fresh view on every update.

        ``None`` is delivered once the session no longer exists.
        """

        def on_session(session: Optional[Session]) -> None:
            callback(derive_view(session, viewer_uid) if session else None)

        return self.sessions.subscribe(session_id, on_session)

