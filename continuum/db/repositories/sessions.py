"""SQLite implementation of the session index repository."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

import aiosqlite

from continuum.models import BoundaryMarker, ScanResult, SessionRecord

_SCAN_COLUMNS = """
    continuation_parent_id=?, child_started_at=?, has_boundary=?,
    boundary_timestamp=?, boundary_next_session_id=?, boundary_message=?,
    scan_error=?, scanned_at=?
"""


def scan_params(scan: ScanResult, scanned_at: str) -> tuple[Any, ...]:
    marker = scan.parentMarker if scan.isParent else None
    return (
        scan.parentId if scan.isChild else None,
        scan.childStartedAt if scan.isChild else None,
        1 if marker is not None else 0,
        marker.timestamp if marker else None,
        marker.nextSessionId if marker else None,
        marker.message if marker else "",
        scan.error,
        scanned_at,
    )


def row_to_scan(row: Any) -> ScanResult:
    data = dict(row)
    parent_id = data.get("continuation_parent_id")
    has_boundary = bool(data.get("has_boundary"))
    return ScanResult(
        sessionId=data["id"],
        isChild=bool(parent_id),
        parentId=parent_id or None,
        childStartedAt=data.get("child_started_at"),
        isParent=has_boundary,
        parentMarker=BoundaryMarker(
            timestamp=data.get("boundary_timestamp"),
            nextSessionId=data.get("boundary_next_session_id"),
            message=data.get("boundary_message") or "",
        ) if has_boundary else None,
        error=data.get("scan_error"),
    )


def _placeholders(count: int) -> str:
    return ",".join("?" for _ in range(count))


class SqliteSessionRepository:
    """SQLite-backed session index with the latest scan result per session."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, record: SessionRecord, scan: ScanResult | None = None) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO sessions (
                id, project_path, file_path, file_mtime, file_size,
                message_count, first_message_at, last_message_at,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_path=excluded.project_path, file_path=excluded.file_path,
                file_mtime=excluded.file_mtime, file_size=excluded.file_size,
                message_count=excluded.message_count,
                first_message_at=excluded.first_message_at,
                last_message_at=excluded.last_message_at,
                updated_at=excluded.updated_at
            """,
            (
                record.sessionId, record.projectPath, record.filePath,
                record.mtime, record.fileSize, record.messageCount,
                record.firstMessageAt, record.lastMessageAt,
                now, now,
            ),
        )
        if scan is not None:
            await self.db.execute(
                f"UPDATE sessions SET {_SCAN_COLUMNS} WHERE id = ?",
                (*scan_params(scan, now), record.sessionId),
            )
        await self.db.commit()

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_many(self, session_ids: Iterable[str]) -> list[dict]:
        ids = list(session_ids)
        if not ids:
            return []
        async with self.db.execute(
            f"SELECT * FROM sessions WHERE id IN ({_placeholders(len(ids))})", ids
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_all(self) -> list[dict]:
        async with self.db.execute("SELECT * FROM sessions ORDER BY id") as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def list_scans(self) -> dict[str, ScanResult]:
        async with self.db.execute("SELECT * FROM sessions WHERE scanned_at IS NOT NULL") as cur:
            return {row["id"]: row_to_scan(row) for row in await cur.fetchall()}

    async def get_scans(self, session_ids: Iterable[str]) -> dict[str, ScanResult]:
        ids = list(session_ids)
        if not ids:
            return {}
        async with self.db.execute(
            f"SELECT * FROM sessions WHERE scanned_at IS NOT NULL AND id IN ({_placeholders(len(ids))})",
            ids,
        ) as cur:
            return {row["id"]: row_to_scan(row) for row in await cur.fetchall()}

    async def delete(self, session_id: str) -> None:
        await self.db.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        await self.db.commit()
