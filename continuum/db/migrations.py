"""Schema setup for whichever handle ``connection.get_connection`` returned."""
from __future__ import annotations

import logging
from typing import Any

import aiosqlite

try:
    import asyncpg
except ImportError:
    asyncpg = None

from continuum.db import sqlite_migrations
from continuum.errors import SessionIndexUnavailableError

logger = logging.getLogger("continuum.db")


async def run_migrations(db: Any) -> str:
    """Apply the schema and return the name of the backend it was applied to."""
    if isinstance(db, aiosqlite.Connection):
        await sqlite_migrations.run_migrations(db)
        backend = "sqlite"
    elif asyncpg is not None and isinstance(db, asyncpg.Pool):
        from continuum.db import postgres_migrations

        await postgres_migrations.run_migrations(db)
        backend = "postgres"
    else:
        raise SessionIndexUnavailableError(f"Unsupported database handle: {type(db).__name__}")

    logger.info("Schema ready (%s backend, version %s)", backend, sqlite_migrations.SCHEMA_VERSION)
    return backend
