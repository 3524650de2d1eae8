"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .continuations import SqliteContinuationRepository
from .sync_state import SqliteSyncStateRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteContinuationRepository",
    "SqliteSyncStateRepository",
]
