"""Joining a friend's session by its shared code."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from .errors import NotFoundOrFull, RaceLoss
from .session_store import PLAYING, WAITING, PlayerRef, Session, SessionStore
from .store import SharedStore

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


class JoinResolver:
    def __init__(self, store: SharedStore) -> None:
        self.sessions = SessionStore(store)

    def join(self, code: str, joiner_id: str, joiner_handle: Optional[str] = None) -> Session:
        """Attach ``joiner_id`` as player O and start the game.

        The slot check and both field writes happen in one conditional
        update. Raises :class:`NotFoundOrFull` when the session is missing
        or taken, and :class:`RaceLoss` when it was open on first read but
        another joiner got there first.
        """

        session_id = normalize_code(code)
        seen = self.sessions.get(session_id)
        if not _is_open(seen, joiner_id):
            logger.info("Join of %s by %s refused", session_id, joiner_id)
            raise NotFoundOrFull(session_id)

        def apply(current: Optional[Session]) -> Optional[Session]:
            if not _is_open(current, joiner_id):
                return None
            return replace(
                current,
                player_o=PlayerRef(joiner_id, joiner_handle),
                status=PLAYING,
            )

        committed, session = self.sessions.transact(session_id, apply)
        if not committed:
            logger.info("Join of %s by %s lost a race", session_id, joiner_id)
            raise RaceLoss(session_id)
        logger.info("%s joined session %s", joiner_id, session_id)
        return session


def _is_open(session: Optional[Session], joiner_id: str) -> bool:
    return (
        session is not None
        and session.status == WAITING
        and session.player_o is None
        and session.player_x.uid != joiner_id
    )
