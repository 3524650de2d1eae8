"""PostgreSQL implementation of transcript sync state."""
from __future__ import annotations

import asyncpg


class PostgresSyncStateRepository:
    def __init__(self, db: asyncpg.Connection):
        self.db = db

    async def get_sync_state(self, file_path: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM sync_state WHERE file_path = $1", file_path)
        return dict(row) if row else None

    async def upsert_sync_state(self, state: dict) -> None:
        # sync_state has PRIMARY KEY file_path
        await self.db.execute(
            """INSERT INTO sync_state (file_path, session_id, file_mtime, file_size, last_synced, scan_ms)
               VALUES ($1, $2, $3, $4, $5, $6)
               ON CONFLICT(file_path) DO UPDATE SET
                 session_id=EXCLUDED.session_id, file_mtime=EXCLUDED.file_mtime,
                 file_size=EXCLUDED.file_size, last_synced=EXCLUDED.last_synced,
                 scan_ms=EXCLUDED.scan_ms""",
            state["file_path"], state["session_id"], state["file_mtime"],
            state.get("file_size", 0), state["last_synced"], state.get("scan_ms", 0),
        )

    async def delete_sync_state(self, file_path: str) -> None:
        await self.db.execute("DELETE FROM sync_state WHERE file_path = $1", file_path)

    async def list_all(self) -> list[dict]:
        rows = await self.db.fetch("SELECT * FROM sync_state")
        return [dict(r) for r in rows]
