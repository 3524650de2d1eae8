"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any

import aiosqlite

from continuum.db.repositories.continuations import SqliteContinuationRepository
from continuum.db.repositories.sessions import SqliteSessionRepository
from continuum.db.repositories.sync_state import SqliteSyncStateRepository


def get_session_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSessionRepository(db)
    from continuum.db.repositories.postgres.sessions import PostgresSessionRepository
    return PostgresSessionRepository(db)


def get_continuation_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteContinuationRepository(db)
    from continuum.db.repositories.postgres.continuations import PostgresContinuationRepository
    return PostgresContinuationRepository(db)


def get_sync_state_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSyncStateRepository(db)
    from continuum.db.repositories.postgres.sync_state import PostgresSyncStateRepository
    return PostgresSyncStateRepository(db)
