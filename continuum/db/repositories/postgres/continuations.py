"""PostgreSQL storage for continuation edges."""
from __future__ import annotations

from typing import Iterable

import asyncpg

from continuum.db.repositories.continuations import edge_params, row_to_edge
from continuum.models import ContinuationEdge

_UPSERT = """
    INSERT INTO session_continuations (
        child_session_id, parent_session_id, continuation_order,
        split_reason, split_timestamp, child_started_timestamp,
        is_active_continuation, is_orphaned, has_file_history_event, has_compact_boundary,
        updated_at
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, now())
    ON CONFLICT(child_session_id) DO UPDATE SET
        parent_session_id=EXCLUDED.parent_session_id,
        continuation_order=EXCLUDED.continuation_order,
        split_reason=EXCLUDED.split_reason,
        split_timestamp=EXCLUDED.split_timestamp,
        child_started_timestamp=EXCLUDED.child_started_timestamp,
        is_active_continuation=EXCLUDED.is_active_continuation,
        is_orphaned=EXCLUDED.is_orphaned,
        has_file_history_event=EXCLUDED.has_file_history_event,
        has_compact_boundary=EXCLUDED.has_compact_boundary,
        updated_at=EXCLUDED.updated_at
"""


class PostgresContinuationRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def replace_all(self, edges: Iterable[ContinuationEdge]) -> None:
        params = [edge_params(edge) for edge in edges]
        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM session_continuations")
                if params:
                    await conn.executemany(_UPSERT, params)

    async def upsert_many(self, edges: Iterable[ContinuationEdge]) -> None:
        params = [edge_params(edge) for edge in edges]
        if params:
            await self.db.executemany(_UPSERT, params)

    async def delete_by_children(self, child_ids: Iterable[str]) -> None:
        ids = list(child_ids)
        if ids:
            await self.db.execute(
                "DELETE FROM session_continuations WHERE child_session_id = ANY($1::text[])", ids
            )

    async def list_by_parent(self, parent_id: str) -> list[ContinuationEdge]:
        rows = await self.db.fetch(
            """SELECT * FROM session_continuations WHERE parent_session_id = $1
               ORDER BY continuation_order, COALESCE(child_started_timestamp, 0), child_session_id""",
            parent_id,
        )
        return [row_to_edge(r) for r in rows]

    async def list_orphaned(self) -> list[ContinuationEdge]:
        rows = await self.db.fetch(
            "SELECT * FROM session_continuations WHERE is_orphaned = 1 ORDER BY parent_session_id, child_session_id"
        )
        return [row_to_edge(r) for r in rows]

    async def list_all(self) -> list[ContinuationEdge]:
        rows = await self.db.fetch(
            "SELECT * FROM session_continuations ORDER BY parent_session_id, continuation_order, child_session_id"
        )
        return [row_to_edge(r) for r in rows]
