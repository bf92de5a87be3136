"""Random matchmaking through a shared waiting queue.

Layout in the store::

    queue/<uid>        -> {"uid": ..., "handle": ...}   waiting clients
    matchmaking/<uid>  -> "<session id>"                assignment for a waiting client

A client reads the queue and either claims a waiting opponent or enqueues
itself and waits for an assignment. Claims run as one conditional update on
the whole ``queue`` node that removes both the opponent's entry and the
claimer's own entry, so two clients that see each other cannot both win.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import RaceLoss
from .lifecycle import SessionManager
from .session_store import RANDOM, WAITING, PlayerRef, store_errors
from .store import ABORT, SharedStore, first_value, join_path

logger = logging.getLogger(__name__)

QUEUE_PATH = "queue"
MATCH_PATH = "matchmaking"

QUEUED = "queued"
MATCHED = "matched"
CANCELLED = "cancelled"


def entry_path(uid: str) -> str:
    return join_path(QUEUE_PATH, uid)


def assignment_path(uid: str) -> str:
    return join_path(MATCH_PATH, uid)


@dataclass(frozen=True)
class QueueEntry:
    uid: str
    handle: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"uid": self.uid, "handle": self.handle}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueEntry":
        return cls(uid=data["uid"], handle=data.get("handle"))

    def as_player(self) -> PlayerRef:
        return PlayerRef(self.uid, self.handle)


class MatchTicket:
    """One client's matchmaking attempt."""

    def __init__(
        self,
        matchmaker: "Matchmaker",
        uid: str,
        handle: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.matchmaker = matchmaker
        self.uid = uid
        self.handle = handle
        self.session_id = session_id
        self.state = MATCHED if session_id else QUEUED

    @property
    def matched(self) -> bool:
        return self.state == MATCHED

    def poll(self) -> Optional[str]:
        """Adopt the assignment if one has been written already."""

        if self.state == QUEUED:
            pending = self.matchmaker.pending_assignment(self.uid)
            if pending:
                self._adopt(pending)
        return self.session_id

    async def wait(self, timeout: Optional[float] = None) -> str:
        """Wait for an opponent to claim this client.

        Raises ``asyncio.TimeoutError`` if nobody does within ``timeout``;
        the queue entry stays in place so the caller decides whether to
        cancel.
        """

        # Drops a stale assignment before listening for a fresh one.
        self.poll()
        if self.state == QUEUED:
            value = await first_value(
                self.matchmaker.store,
                assignment_path(self.uid),
                lambda v: bool(v),
                timeout,
            )
            if self.state == QUEUED:
                self._adopt(value)
        if self.session_id is None:
            raise RuntimeError(f"Ticket for {self.uid} was {self.state}")
        return self.session_id

    def cancel(self) -> bool:
        if self.state != QUEUED:
            return False
        self.state = CANCELLED
        self.matchmaker.cancel(self.uid)
        return True

    def _adopt(self, session_id: str) -> None:
        store = self.matchmaker.store
        with store_errors("delete"):
            store.delete(entry_path(self.uid))
            store.delete(assignment_path(self.uid))
        self.session_id = session_id
        self.state = MATCHED
        logger.info("%s was matched into session %s", self.uid, session_id)


class Matchmaker:
    def __init__(self, store: SharedStore, manager: SessionManager) -> None:
        self.store = store
        self.manager = manager

    def find_match(self, uid: str, handle: Optional[str] = None) -> MatchTicket:
        """Pair ``uid`` with a waiting opponent, or enqueue it.

        The returned ticket is already matched when an opponent was claimed;
        otherwise the caller waits on it or polls it.
        """

        pending = self.pending_assignment(uid)
        if pending:
            ticket = MatchTicket(self, uid, handle)
            ticket._adopt(pending)
            return ticket

        with store_errors("read"):
            queue = self.store.read(QUEUE_PATH) or {}
        queued = uid in queue

        try:
            opponent = self._claim(uid, queued)
        except RaceLoss:
            # Our own entry was claimed between the read and the update;
            # the winner is about to write our assignment.
            logger.info("%s was claimed while probing, waiting for assignment", uid)
            return MatchTicket(self, uid, handle)

        if opponent is None:
            self._enqueue(uid, handle)
            return MatchTicket(self, uid, handle)

        me = PlayerRef(uid, handle)
        try:
            session_id = self.manager.start_session(opponent.as_player(), me, mode=RANDOM)
        except Exception:
            logger.warning("Session creation failed, returning %s to the queue", opponent.uid)
            with store_errors("write"):
                self.store.write(entry_path(opponent.uid), opponent.to_dict())
            raise
        with store_errors("write"):
            self.store.write(assignment_path(opponent.uid), session_id)
        logger.info("%s claimed %s into session %s", uid, opponent.uid, session_id)
        return MatchTicket(self, uid, handle, session_id=session_id)

    def cancel(self, uid: str) -> None:
        with store_errors("delete"):
            self.store.delete(entry_path(uid))
        logger.info("%s left the queue", uid)

    def waiting(self) -> int:
        with store_errors("read"):
            return len(self.store.read(QUEUE_PATH) or {})

    def is_queued(self, uid: str) -> bool:
        with store_errors("read"):
            return self.store.read(entry_path(uid)) is not None

    def _enqueue(self, uid: str, handle: Optional[str]) -> None:
        with store_errors("write"):
            self.store.write(entry_path(uid), QueueEntry(uid, handle).to_dict())
        logger.info("%s is waiting for an opponent", uid)

    def pending_assignment(self, uid: str) -> Optional[str]:
        """Return an unconsumed assignment that still points at a live game.

        Assignments to missing or unrelated sessions are deleted.
        """

        with store_errors("read"):
            session_id = self.store.read(assignment_path(uid))
        if not session_id:
            return None
        session = self.manager.sessions.get(session_id)
        if session is not None and session.status != WAITING and session.symbol_for(uid):
            return session_id
        logger.info("Dropping stale assignment %s for %s", session_id, uid)
        with store_errors("delete"):
            self.store.delete(assignment_path(uid))
        return None

    def _claim(self, uid: str, queued: bool) -> Optional[QueueEntry]:
        """Remove the first other waiting entry together with our own.

        Returns the claimed entry, ``None`` when nobody else is waiting, and
        raises :class:`RaceLoss` when our own entry vanished because another
        client claimed us first.
        """

        claimed: Dict[str, Optional[QueueEntry]] = {"entry": None}
        lost = {"race": False}

        def apply(current: Any) -> Any:
            claimed["entry"] = None
            lost["race"] = False
            entries = dict(current or {})
            if queued and uid not in entries:
                lost["race"] = True
                return ABORT
            opponent_key = next((key for key in entries if key != uid), None)
            if opponent_key is None:
                return ABORT
            claimed["entry"] = QueueEntry.from_dict(entries.pop(opponent_key))
            entries.pop(uid, None)
            return entries or None

        with store_errors("transaction"):
            committed, _ = self.store.transaction(QUEUE_PATH, apply)
        if lost["race"]:
            raise RaceLoss(uid, "Queue entry was already claimed")
        return claimed["entry"] if committed else None
