"""Exception hierarchy shared by the broker components."""

from __future__ import annotations


class XOLinkError(Exception):
    """Base class for every broker failure."""


class ValidationRejection(XOLinkError):
    """A move that breaks turn order, targets an occupied cell or a closed game."""


class NotFoundOrFull(XOLinkError):
    """Join or claim target is missing or no longer open."""

    def __init__(self, target: str, message: str = "Game not found or is already full"):
        self.target = target
        super().__init__(message)


class RaceLoss(NotFoundOrFull):
    """A concurrent client took the slot first."""


class InvalidStateTransition(XOLinkError):
    """The session is not in a state that allows the requested transition."""


class NotSignedIn(XOLinkError):
    """The identity provider has no current user."""


class NotParticipant(XOLinkError):
    """The caller is not one of the session's two players."""


class StoreError(XOLinkError):
    """The shared store failed to read, write or notify."""
