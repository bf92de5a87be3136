"""Per-user entry point tying the broker components to an identity."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .config import Settings, get_settings
from .errors import NotParticipant, NotSignedIn
from .joining import JoinResolver
from .lifecycle import SessionManager, SessionView, derive_view
from .matchmaking import MatchTicket, Matchmaker
from .profiles import (
    Identity,
    IdentityProvider,
    InMemoryProfileStore,
    ProfileStore,
    ResultRecorder,
)
from .session_store import FINISHED, Session
from .store import InMemoryStore, SharedStore, Unsubscribe


@dataclass
class Broker:
    """Shared components wired to one store and one profile store."""

    store: SharedStore
    profiles: ProfileStore
    manager: SessionManager
    joiner: JoinResolver
    matchmaker: Matchmaker


def create_broker(
    store: Optional[SharedStore] = None,
    profiles: Optional[ProfileStore] = None,
    settings: Optional[Settings] = None,
) -> Broker:
    settings = settings or get_settings()
    store = store if store is not None else InMemoryStore()
    profiles = profiles if profiles is not None else InMemoryProfileStore()
    recorder = ResultRecorder(profiles, settings.win_points, settings.win_levels)
    manager = SessionManager(store, recorder)
    return Broker(
        store=store,
        profiles=profiles,
        manager=manager,
        joiner=JoinResolver(store),
        matchmaker=Matchmaker(store, manager),
    )


class GameClient:
    """Runs every broker operation on behalf of the signed-in user."""

    def __init__(self, broker: Broker, identity: IdentityProvider) -> None:
        self.broker = broker
        self.identity = identity

    @property
    def me(self) -> Identity:
        user = self.identity.current_user()
        if user is None:
            raise NotSignedIn("Sign in to play online")
        return user

    # ---- friend games ----

    def create_game(self) -> str:
        me = self.me
        return self.broker.manager.create_session(me.uid, me.handle)

    def cancel_game(self, session_id: str) -> bool:
        return self.broker.manager.cancel_waiting(session_id, self.me.uid)

    def join_game(self, code: str) -> Session:
        me = self.me
        return self.broker.joiner.join(code, me.uid, me.handle)

    # ---- random matchmaking ----

    def find_match(self) -> MatchTicket:
        me = self.me
        return self.broker.matchmaker.find_match(me.uid, me.handle)

    def poll_match(self) -> Optional[str]:
        me = self.me
        return MatchTicket(self.broker.matchmaker, me.uid, me.handle).poll()

    def in_queue(self) -> bool:
        return self.broker.matchmaker.is_queued(self.me.uid)

    def cancel_match(self) -> None:
        self.broker.matchmaker.cancel(self.me.uid)

    # ---- playing ----

    def move(self, session_id: str, cell_index: int) -> Optional[Session]:
        return self.broker.manager.attempt_move(session_id, self.me.uid, cell_index)

    def rematch(self, session_id: str, seen_round: Optional[int] = None) -> Session:
        """Ask for a rematch of the round the caller saw finish.

        Without ``seen_round`` the round read here is used, but only when
        that read shows a finished game.
        """

        session = self.broker.manager.get(session_id)
        if session.symbol_for(self.me.uid) is None:
            raise NotParticipant(f"{self.me.uid} is not playing in {session_id}")
        if seen_round is None and session.status == FINISHED:
            seen_round = session.round
        return self.broker.manager.rematch(session_id, seen_round)

    def view(self, session_id: str) -> SessionView:
        user = self.identity.current_user()
        return derive_view(self.broker.manager.get(session_id), user.uid if user else None)

    def watch(
        self, session_id: str, callback: Callable[[Optional[SessionView]], None]
    ) -> Unsubscribe:
        user = self.identity.current_user()
        return self.broker.manager.watch(session_id, user.uid if user else None, callback)
