"""Track transcript sync state for incremental scanning."""
from __future__ import annotations

import aiosqlite


class SqliteSyncStateRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get_sync_state(self, file_path: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sync_state WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def upsert_sync_state(self, state: dict) -> None:
        await self.db.execute(
            """INSERT INTO sync_state (file_path, session_id, file_mtime, file_size, last_synced, scan_ms)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(file_path) DO UPDATE SET
                 session_id=excluded.session_id, file_mtime=excluded.file_mtime,
                 file_size=excluded.file_size, last_synced=excluded.last_synced,
                 scan_ms=excluded.scan_ms""",
            (
                state["file_path"], state["session_id"], state["file_mtime"],
                state.get("file_size", 0), state["last_synced"], state.get("scan_ms", 0),
            ),
        )
        await self.db.commit()

    async def delete_sync_state(self, file_path: str) -> None:
        await self.db.execute("DELETE FROM sync_state WHERE file_path = ?", (file_path,))
        await self.db.commit()

    async def list_all(self) -> list[dict]:
        async with self.db.execute("SELECT * FROM sync_state") as cur:
            return [dict(r) for r in await cur.fetchall()]
