"""Database connection factory.

Provides singleton async connection to SQLite (default) with WAL mode.
Backend selection via CONTINUUM_DB_BACKEND env var.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Union

import aiosqlite

try:
    import asyncpg
except ImportError:
    asyncpg = None  # type: ignore

from continuum import config
from continuum.errors import SessionIndexUnavailableError

logger = logging.getLogger("continuum.db")

DB_PATH = Path(config.DB_PATH)

# asyncpg.Pool when the Postgres backend is selected
DbConnection = Union[aiosqlite.Connection, Any]

_connection: DbConnection | None = None


async def get_connection() -> DbConnection:
    """Return the singleton database connection/pool, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection

    try:
        if config.DB_BACKEND == "postgres":
            if not asyncpg:
                raise ImportError("asyncpg is required for Postgres backend.")
            logger.info("Connecting to PostgreSQL backend")
            _connection = await asyncpg.create_pool(config.DATABASE_URL)
            return _connection

        DB_PATH.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(DB_PATH))
    except (OSError, aiosqlite.Error) as exc:
        raise SessionIndexUnavailableError(f"Session index database unavailable: {exc}") from exc

    conn.row_factory = aiosqlite.Row
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info("Database connection established: %s", DB_PATH)
    _connection = conn
    return _connection


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")
