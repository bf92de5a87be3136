"""Typed access to session records kept in the shared store."""

from __future__ import annotations

import contextlib
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .board import Cell, Mark, O, X, empty_board
from .errors import StoreError, XOLinkError
from .store import ABORT, SharedStore, Unsubscribe, join_path

logger = logging.getLogger(__name__)

GAMES_PATH = "games"

WAITING = "waiting"
PLAYING = "playing"
FINISHED = "finished"

FRIEND = "friend"
RANDOM = "random"


@dataclass(frozen=True)
class PlayerRef:
    uid: str
    handle: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"uid": self.uid, "handle": self.handle}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PlayerRef"]:
        if not data:
            return None
        return cls(uid=data["uid"], handle=data.get("handle"))


@dataclass
class Session:
    """Snapshot of one game as stored under ``games/<id>``."""

    player_x: PlayerRef
    player_o: Optional[PlayerRef] = None
    board: List[Cell] = field(default_factory=empty_board)
    turn: Mark = X
    status: str = WAITING
    winner: Optional[str] = None
    mode: str = FRIEND
    # Bumped by every rematch
    round: int = 0
    id: Optional[str] = None

    def symbol_for(self, uid: Optional[str]) -> Optional[Mark]:
        if uid is None:
            return None
        if uid == self.player_x.uid:
            return X
        if self.player_o and uid == self.player_o.uid:
            return O
        return None

    def player_for(self, mark: Mark) -> Optional[PlayerRef]:
        return self.player_x if mark == X else self.player_o

    def to_dict(self) -> Dict[str, Any]:
        return {
            "board": list(self.board),
            "playerX": self.player_x.to_dict(),
            "playerO": self.player_o.to_dict() if self.player_o else None,
            "turn": self.turn,
            "status": self.status,
            "winner": self.winner,
            "mode": self.mode,
            "round": self.round,
        }

    @classmethod
    def from_dict(cls, session_id: Optional[str], data: Dict[str, Any]) -> "Session":
        player_x = PlayerRef.from_dict(data.get("playerX"))
        if player_x is None:
            raise StoreError(f"Session {session_id} has no playerX")
        # The store drops empty nodes, so an all-empty board may be missing.
        board = list(data.get("board") or empty_board())
        return cls(
            id=session_id,
            player_x=player_x,
            player_o=PlayerRef.from_dict(data.get("playerO")),
            board=board,
            turn=data.get("turn", X),
            status=data.get("status", WAITING),
            winner=data.get("winner"),
            mode=data.get("mode", FRIEND),
            round=data.get("round", 0),
        )


@contextlib.contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Translate backend failures into :class:`StoreError`."""

    try:
        yield
    except XOLinkError:
        raise
    except Exception as exc:
        logger.error("Store %s failed: %s", action, exc)
        raise StoreError(f"Store {action} failed: {exc}") from exc


class SessionStore:
    """Read/write/subscribe wrapper bound to the ``games`` subtree."""

    def __init__(self, store: SharedStore) -> None:
        self.store = store

    @staticmethod
    def path(session_id: str) -> str:
        return join_path(GAMES_PATH, session_id)

    def create(self, session: Session) -> Session:
        with store_errors("allocate"):
            session_id = self.store.allocate_key(GAMES_PATH)
            self.store.write(self.path(session_id), session.to_dict())
        return replace(session, id=session_id)

    def get(self, session_id: str) -> Optional[Session]:
        with store_errors("read"):
            data = self.store.read(self.path(session_id))
        if not data:
            return None
        return Session.from_dict(session_id, data)

    def update(self, session_id: str, fields: Dict[str, Any]) -> None:
        with store_errors("update"):
            self.store.update(self.path(session_id), fields)

    def delete(self, session_id: str) -> None:
        with store_errors("delete"):
            self.store.delete(self.path(session_id))

    def transact(
        self,
        session_id: str,
        fn: Callable[[Optional[Session]], Optional[Session]],
    ) -> Tuple[bool, Optional[Session]]:
        """Conditionally replace a session.

        ``fn`` receives the current snapshot (``None`` if missing) and returns
        the new snapshot, or ``None`` to leave the record untouched.
        """

        def apply(current: Any) -> Any:
            snapshot = Session.from_dict(session_id, current) if current else None
            updated = fn(snapshot)
            if updated is None:
                return ABORT
            return updated.to_dict()

        with store_errors("transaction"):
            committed, value = self.store.transaction(self.path(session_id), apply)
        if not value:
            return committed, None
        return committed, Session.from_dict(session_id, value)

    def delete_if(self, session_id: str, predicate: Callable[[Session], bool]) -> bool:
        def apply(current: Any) -> Any:
            if not current or not predicate(Session.from_dict(session_id, current)):
                return ABORT
            return None

        with store_errors("transaction"):
            committed, _ = self.store.transaction(self.path(session_id), apply)
        return committed

    def subscribe(
        self, session_id: str, callback: Callable[[Optional[Session]], None]
    ) -> Unsubscribe:
        def on_value(value: Any) -> None:
            callback(Session.from_dict(session_id, value) if value else None)

        with store_errors("subscribe"):
            return self.store.subscribe(self.path(session_id), on_value)
