"""PostgreSQL schema creation and versioning."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("continuum.db")

SCHEMA_VERSION = 2

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS sync_state (
    file_path    TEXT PRIMARY KEY,
    session_id   TEXT NOT NULL,
    file_mtime   DOUBLE PRECISION NOT NULL,
    file_size    BIGINT DEFAULT 0,
    last_synced  TEXT NOT NULL,
    scan_ms      INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_sync_state_session ON sync_state(session_id);

CREATE TABLE IF NOT EXISTS sessions (
    id                        TEXT PRIMARY KEY,
    project_path              TEXT DEFAULT '',
    file_path                 TEXT DEFAULT '',
    file_mtime                DOUBLE PRECISION DEFAULT 0,
    file_size                 BIGINT DEFAULT 0,
    message_count             INTEGER DEFAULT 0,
    first_message_at          TEXT DEFAULT '',
    last_message_at           TEXT DEFAULT '',
    continuation_parent_id    TEXT,
    child_started_at          BIGINT,
    has_boundary              INTEGER DEFAULT 0,
    boundary_timestamp        BIGINT,
    boundary_next_session_id  TEXT,
    boundary_message          TEXT DEFAULT '',
    scan_error                TEXT,
    scanned_at                TEXT,
    created_at                TEXT NOT NULL,
    updated_at                TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_file ON sessions(file_path);
CREATE INDEX IF NOT EXISTS idx_sessions_parent ON sessions(continuation_parent_id);

CREATE TABLE IF NOT EXISTS session_continuations (
    child_session_id         TEXT PRIMARY KEY,
    parent_session_id        TEXT NOT NULL,
    continuation_order       INTEGER NOT NULL DEFAULT 0,
    split_reason             TEXT DEFAULT '',
    split_timestamp          BIGINT,
    child_started_timestamp  BIGINT,
    is_active_continuation   INTEGER DEFAULT 0,
    is_orphaned              INTEGER DEFAULT 0,
    has_file_history_event   INTEGER DEFAULT 1,
    has_compact_boundary     INTEGER DEFAULT 0,
    updated_at               TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_continuations_parent ON session_continuations(parent_session_id, continuation_order);
CREATE INDEX IF NOT EXISTS idx_continuations_orphaned ON session_continuations(is_orphaned) WHERE is_orphaned = 1;
"""


async def run_migrations(db: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with db.acquire() as conn:
        async with conn.transaction():
            await conn.execute(_TABLES)
            current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
            if current_version >= SCHEMA_VERSION:
                logger.info("Schema is up to date (version %s)", current_version)
                return
            await conn.execute("ALTER TABLE sessions ADD COLUMN IF NOT EXISTS has_boundary INTEGER DEFAULT 0")
            await conn.execute("ALTER TABLE sync_state ADD COLUMN IF NOT EXISTS scan_ms INTEGER DEFAULT 0")
            await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info("Postgres migrations complete, schema version %s", SCHEMA_VERSION)
