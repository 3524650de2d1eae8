"""Database schema creation and versioning.

All CREATE TABLE statements for the continuation index.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("continuum.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Sync State (Incremental Change Detection) ──────────────────
CREATE TABLE IF NOT EXISTS sync_state (
    file_path    TEXT PRIMARY KEY,
    session_id   TEXT NOT NULL,
    file_mtime   REAL NOT NULL,
    file_size    INTEGER DEFAULT 0,
    last_synced  TEXT NOT NULL,
    scan_ms      INTEGER DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_sync_state_session ON sync_state(session_id);

-- ── 2. Session index + persisted scan markers ─────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id                        TEXT PRIMARY KEY,
    project_path              TEXT DEFAULT '',
    file_path                 TEXT DEFAULT '',
    file_mtime                REAL DEFAULT 0,
    file_size                 INTEGER DEFAULT 0,
    message_count             INTEGER DEFAULT 0,
    first_message_at          TEXT DEFAULT '',
    last_message_at           TEXT DEFAULT '',
    continuation_parent_id    TEXT,
    child_started_at          INTEGER,
    has_boundary              INTEGER DEFAULT 0,
    boundary_timestamp        INTEGER,
    boundary_next_session_id  TEXT,
    boundary_message          TEXT DEFAULT '',
    scan_error                TEXT,
    scanned_at                TEXT,
    created_at                TEXT NOT NULL,
    updated_at                TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_file ON sessions(file_path);
CREATE INDEX IF NOT EXISTS idx_sessions_parent ON sessions(continuation_parent_id);

-- ── 3. Continuation edges (child -> parent) ───────────────────────
CREATE TABLE IF NOT EXISTS session_continuations (
    child_session_id         TEXT PRIMARY KEY,
    parent_session_id        TEXT NOT NULL,
    continuation_order       INTEGER NOT NULL DEFAULT 0,
    split_reason             TEXT DEFAULT '',
    split_timestamp          INTEGER,
    child_started_timestamp  INTEGER,
    is_active_continuation   INTEGER DEFAULT 0,
    is_orphaned              INTEGER DEFAULT 0,
    has_file_history_event   INTEGER DEFAULT 1,
    has_compact_boundary     INTEGER DEFAULT 0,
    updated_at               TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_continuations_parent ON session_continuations(parent_session_id, continuation_order);
CREATE INDEX IF NOT EXISTS idx_continuations_orphaned ON session_continuations(is_orphaned) WHERE is_orphaned = 1;
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)

    await db.executescript(_TABLES)

    # Version 1 databases predate the persisted boundary flag and scan timing.
    await _ensure_column(db, "sessions", "has_boundary", "INTEGER DEFAULT 0")
    await _ensure_column(db, "sync_state", "scan_ms", "INTEGER DEFAULT 0")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
