"""XOLink package exposing the session broker, matchmaking, and the web application."""

from .board import evaluate
from .client import GameClient, create_broker
from .lifecycle import SessionManager
from .matchmaking import Matchmaker
from .store import InMemoryStore
from .ui import app

__all__ = [
    "GameClient",
    "InMemoryStore",
    "Matchmaker",
    "SessionManager",
    "app",
    "create_broker",
    "evaluate",
]
