"""PostgreSQL implementation of the session index repository."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable

import asyncpg

from continuum.db.repositories.sessions import row_to_scan, scan_params
from continuum.models import ScanResult, SessionRecord

_UPDATE_SCAN = """
    UPDATE sessions SET
        continuation_parent_id=$1, child_started_at=$2, has_boundary=$3,
        boundary_timestamp=$4, boundary_next_session_id=$5, boundary_message=$6,
        scan_error=$7, scanned_at=$8
    WHERE id = $9
"""


class PostgresSessionRepository:
    """PostgreSQL-backed session index."""

    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def upsert(self, record: SessionRecord, scan: ScanResult | None = None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """
            INSERT INTO sessions (
                id, project_path, file_path, file_mtime, file_size,
                message_count, first_message_at, last_message_at,
                created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT(id) DO UPDATE SET
                project_path=EXCLUDED.project_path, file_path=EXCLUDED.file_path,
                file_mtime=EXCLUDED.file_mtime, file_size=EXCLUDED.file_size,
                message_count=EXCLUDED.message_count,
                first_message_at=EXCLUDED.first_message_at,
                last_message_at=EXCLUDED.last_message_at,
                updated_at=EXCLUDED.updated_at
            """,
            record.sessionId, record.projectPath, record.filePath,
            record.mtime, record.fileSize, record.messageCount,
            record.firstMessageAt, record.lastMessageAt,
            now, now,
        )
        if scan is not None:
            await self.db.execute(_UPDATE_SCAN, *scan_params(scan, now), record.sessionId)

    async def get_by_id(self, session_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM sessions WHERE id = $1", session_id)
        return dict(row) if row else None

    async def get_many(self, session_ids: Iterable[str]) -> list[dict]:
        ids = list(session_ids)
        if not ids:
            return []
        rows = await self.db.fetch("SELECT * FROM sessions WHERE id = ANY($1::text[])", ids)
        return [dict(r) for r in rows]

    async def list_all(self) -> list[dict]:
        rows = await self.db.fetch("SELECT * FROM sessions ORDER BY id")
        return [dict(r) for r in rows]

    async def list_scans(self) -> dict[str, ScanResult]:
        rows = await self.db.fetch("SELECT * FROM sessions WHERE scanned_at IS NOT NULL")
        return {r["id"]: row_to_scan(r) for r in rows}

    async def get_scans(self, session_ids: Iterable[str]) -> dict[str, ScanResult]:
        ids = list(session_ids)
        if not ids:
            return {}
        rows = await self.db.fetch(
            "SELECT * FROM sessions WHERE scanned_at IS NOT NULL AND id = ANY($1::text[])", ids
        )
        return {r["id"]: row_to_scan(r) for r in rows}

    async def delete(self, session_id: str) -> None:
        await self.db.execute("DELETE FROM sessions WHERE id = $1", session_id)
