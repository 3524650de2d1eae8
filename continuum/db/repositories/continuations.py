"""SQLite storage for continuation edges."""
from __future__ import annotations

from typing import Any, Iterable

import aiosqlite

from continuum.models import ContinuationEdge

_UPSERT = """
    INSERT INTO session_continuations (
        child_session_id, parent_session_id, continuation_order,
        split_reason, split_timestamp, child_started_timestamp,
        is_active_continuation, is_orphaned, has_file_history_event, has_compact_boundary,
        updated_at
    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))
    ON CONFLICT(child_session_id) DO UPDATE SET
        parent_session_id=excluded.parent_session_id,
        continuation_order=excluded.continuation_order,
        split_reason=excluded.split_reason,
        split_timestamp=excluded.split_timestamp,
        child_started_timestamp=excluded.child_started_timestamp,
        is_active_continuation=excluded.is_active_continuation,
        is_orphaned=excluded.is_orphaned,
        has_file_history_event=excluded.has_file_history_event,
        has_compact_boundary=excluded.has_compact_boundary,
        updated_at=excluded.updated_at
"""


def edge_params(edge: ContinuationEdge) -> tuple[Any, ...]:
    return (
        edge.childId,
        edge.parentId,
        edge.order,
        edge.splitReason,
        edge.splitTimestamp,
        edge.childStartedTimestamp,
        1 if edge.isActiveContinuation else 0,
        1 if edge.isOrphaned else 0,
        1 if edge.hasChildMarker else 0,
        1 if edge.hasParentMarker else 0,
    )


def row_to_edge(row: Any) -> ContinuationEdge:
    data = dict(row)
    return ContinuationEdge(
        childId=data["child_session_id"],
        parentId=data["parent_session_id"],
        order=int(data.get("continuation_order") or 0),
        splitReason=data.get("split_reason") or "",
        splitTimestamp=data.get("split_timestamp"),
        childStartedTimestamp=data.get("child_started_timestamp"),
        hasChildMarker=bool(data.get("has_file_history_event")),
        hasParentMarker=bool(data.get("has_compact_boundary")),
        isOrphaned=bool(data.get("is_orphaned")),
        isActiveContinuation=bool(data.get("is_active_continuation")),
    )


class SqliteContinuationRepository:
    """Edge rows keyed by child session id."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def replace_all(self, edges: Iterable[ContinuationEdge]) -> None:
        await self.db.execute("DELETE FROM session_continuations")
        await self.db.executemany(_UPSERT, [edge_params(edge) for edge in edges])
        await self.db.commit()

    async def upsert_many(self, edges: Iterable[ContinuationEdge]) -> None:
        params = [edge_params(edge) for edge in edges]
        if not params:
            return
        await self.db.executemany(_UPSERT, params)
        await self.db.commit()

    async def delete_by_children(self, child_ids: Iterable[str]) -> None:
        ids = list(child_ids)
        if not ids:
            return
        await self.db.execute(
            f"DELETE FROM session_continuations WHERE child_session_id IN ({','.join('?' for _ in ids)})",
            ids,
        )
        await self.db.commit()

    async def list_by_parent(self, parent_id: str) -> list[ContinuationEdge]:
        async with self.db.execute(
            """SELECT * FROM session_continuations WHERE parent_session_id = ?
               ORDER BY continuation_order, COALESCE(child_started_timestamp, 0), child_session_id""",
            (parent_id,),
        ) as cur:
            return [row_to_edge(r) for r in await cur.fetchall()]

    async def list_orphaned(self) -> list[ContinuationEdge]:
        async with self.db.execute(
            "SELECT * FROM session_continuations WHERE is_orphaned = 1 ORDER BY parent_session_id, child_session_id"
        ) as cur:
            return [row_to_edge(r) for r in await cur.fetchall()]

    async def list_all(self) -> list[ContinuationEdge]:
        async with self.db.execute(
            "SELECT * FROM session_continuations ORDER BY parent_session_id, continuation_order, child_session_id"
        ) as cur:
            return [row_to_edge(r) for r in await cur.fetchall()]
