"""Identity and profile collaborators, plus the post-game result recorder."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from .board import DRAW, O, X
from .session_store import FINISHED, Session

logger = logging.getLogger(__name__)

WIN, LOSS = "win", "loss"


@dataclass(frozen=True)
class Identity:
    uid: str
    handle: Optional[str] = None


@dataclass
class ProfileRecord:
    uid: str
    handle: Optional[str] = None
    points: int = 0
    level: int = 1


@dataclass
class GameRecord:
    session_id: str
    mode: str
    opponent_handle: Optional[str]
    result: str
    played_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {
            "sessionId": self.session_id,
            "mode": self.mode,
            "opponentHandle": self.opponent_handle,
            "result": self.result,
            "playedAt": self.played_at,
        }


class IdentityProvider(Protocol):
    def current_user(self) -> Optional[Identity]:
        ...

    def on_change(self, listener: Callable[[Optional[Identity]], None]) -> Callable[[], None]:
        ...


class ProfileStore(Protocol):
    def get(self, uid: str) -> Optional[ProfileRecord]:
        ...

    def put(self, uid: str, record: ProfileRecord) -> None:
        ...

    def append_history(self, uid: str, record: GameRecord) -> None:
        ...

    def increment_score(self, uid: str, points: int, levels: int) -> None:
        ...

    def history(self, uid: str) -> List[GameRecord]:
        ...


class LocalIdentityProvider:
    """Identity holder for a single client, with sign-in/sign-out listeners."""

    def __init__(self, profiles: Optional[ProfileStore] = None) -> None:
        self._user: Optional[Identity] = None
        self._listeners: List[Callable[[Optional[Identity]], None]] = []
        self._profiles = profiles

    def current_user(self) -> Optional[Identity]:
        return self._user

    def sign_in(self, uid: str, handle: Optional[str] = None) -> Identity:
        self._user = Identity(uid=uid, handle=handle)
        if self._profiles is not None:
            ensure_profile(self._profiles, self._user)
        self._emit()
        return self._user

    def sign_out(self) -> None:
        self._user = None
        self._emit()

    def on_change(self, listener: Callable[[Optional[Identity]], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self) -> None:
        for listener in list(self._listeners):
            listener(self._user)


class InMemoryProfileStore:
    def __init__(self) -> None:
        self._profiles: Dict[str, ProfileRecord] = {}
        self._history: Dict[str, List[GameRecord]] = {}
        self._lock = threading.Lock()

    def get(self, uid: str) -> Optional[ProfileRecord]:
        with self._lock:
            record = self._profiles.get(uid)
            return ProfileRecord(**asdict(record)) if record else None

    def put(self, uid: str, record: ProfileRecord) -> None:
        with self._lock:
            self._profiles[uid] = ProfileRecord(**asdict(record))

    def append_history(self, uid: str, record: GameRecord) -> None:
        with self._lock:
            self._history.setdefault(uid, []).append(record)

    def increment_score(self, uid: str, points: int, levels: int) -> None:
        with self._lock:
            record = self._profiles.setdefault(uid, ProfileRecord(uid=uid))
            record.points += points
            record.level += levels

    def history(self, uid: str) -> List[GameRecord]:
        with self._lock:
            items = list(self._history.get(uid, []))
        return sorted(items, key=lambda r: r.played_at, reverse=True)


def ensure_profile(profiles: ProfileStore, identity: Identity) -> ProfileRecord:
    """Return the profile for ``identity``, creating a fresh one on first sign-in."""

    record = profiles.get(identity.uid)
    if record is None:
        record = ProfileRecord(uid=identity.uid, handle=identity.handle)
        profiles.put(identity.uid, record)
    return record


def result_for(mark: str, winner: Optional[str]) -> str:
    if winner == DRAW:
        return DRAW
    return WIN if winner == mark else LOSS


class ResultRecorder:
    """Writes score and history after a finished game.

    Every profile call is fire-and-forget: failures are logged and the
    remaining writes still run.
    """

    def __init__(self, profiles: ProfileStore, win_points: int = 20, win_levels: int = 1):
        self.profiles = profiles
        self.win_points = win_points
        self.win_levels = win_levels

    def record_finish(self, session: Session) -> None:
        if session.status != FINISHED or session.player_o is None or session.id is None:
            logger.warning("Ignoring result for unfinished session %s", session.id)
            return

        if session.winner in (X, O):
            winner = session.player_for(session.winner)
            self._attempt(
                "increment score",
                self.profiles.increment_score,
                winner.uid,
                self.win_points,
                self.win_levels,
            )

        for mark, opponent in ((X, session.player_o), (O, session.player_x)):
            player = session.player_for(mark)
            record = GameRecord(
                session_id=session.id,
                mode=session.mode,
                opponent_handle=opponent.handle,
                result=result_for(mark, session.winner),
            )
            self._attempt("append history", self.profiles.append_history, player.uid, record)

        logger.info("Recorded result %s for session %s", session.winner, session.id)

    def _attempt(self, action: str, fn: Callable[..., None], *args: object) -> None:
        try:
            fn(*args)
        except Exception as exc:
            logger.warning("Profile store %s failed for %s: %s", action, args[0], exc)
