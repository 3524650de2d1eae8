"""Transcript directory → session index / continuation edge synchronization.

Incremental and mtime-based: unchanged transcripts keep their persisted scan
results, changed ones are re-read and rescanned, and the relationship store
rebuilds only the edges those changes touch.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from continuum import config
from continuum.db.factory import (
    get_continuation_repository,
    get_session_repository,
    get_sync_state_repository,
)
from continuum.errors import ChainNotFoundError
from continuum.models import ChainEvent, ContinuationGraph, InvalidationEvent, ScanResult, SessionRecord
from continuum.observability import record_scan, record_scan_failure, start_span
from continuum.parsers.sessions import read_session_record
from continuum.parsers.transcripts import scan_transcript, session_id_from_path
from continuum.services.chain_resolver import find_root
from continuum.services.events import EventBus, progress_batches
from continuum.services.relationship_store import RelationshipStore

logger = logging.getLogger("continuum.sync")

_TEMP_PROJECT_MARKERS = ("-tmp-", "-private-var-folders", "-var-folders-")


def is_temp_project_dir(path: Path) -> bool:
    name = path.parent.name
    return any(marker in name for marker in _TEMP_PROJECT_MARKERS)


def is_tracked_transcript(path: Path) -> bool:
    return session_id_from_path(path) is not None and not is_temp_project_dir(path)


def _read_and_scan(path: Path) -> tuple[SessionRecord | None, ScanResult]:
    record = read_session_record(path)
    scan = scan_transcript(path, record.sessionId if record else None)
    return record, scan


class SyncEngine:
    """Keeps the session index, scan results and edge list in step with disk.

    Every sync path ends by publishing an ``InvalidationEvent`` on
    ``invalidations`` and returning it.
    """

    def __init__(
        self,
        db: Any,  # aiosqlite.Connection or asyncpg.Pool
        store: RelationshipStore | None = None,
        cache: Any | None = None,
        events: Any | None = None,
        invalidations: Any | None = None,
        sessions_dir: Path | None = None,
    ):
        self.db = db
        self.session_repo = get_session_repository(db)
        self.continuation_repo = get_continuation_repository(db)
        self.sync_repo = get_sync_state_repository(db)
        self.store = store or RelationshipStore(self.session_repo, self.continuation_repo)
        self.cache = cache
        self.events = events
        self.invalidations = invalidations if invalidations is not None else EventBus("invalidations")
        self.sessions_dir = Path(sessions_dir or config.SESSIONS_DIR)
        self._ops_lock = asyncio.Lock()
        self._sync_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    # ── Operations ──────────────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        return await self._start_operation(kind, trigger, metadata or {})

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        """Return live sync observability payload for API status."""
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
            }

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "progress": {},
            "counters": {},
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        progress: dict[str, Any] | None = None,
        counters: dict[str, Any] | None = None,
        stats: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        log_phase = ""
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase and phase != operation.get("phase"):
                operation["phase"] = phase
                log_phase = phase
            if message is not None:
                operation["message"] = message
            if progress:
                operation.setdefault("progress", {}).update(progress)
            if counters:
                operation.setdefault("counters", {}).update(counters)
            if stats:
                operation.setdefault("stats", {}).update(stats)
            operation["updatedAt"] = now

        if log_phase:
            logger.info("Operation update [%s] %s - %s", operation_id, log_phase, message or "")

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["updatedAt"] = now.isoformat()
            operation["finishedAt"] = now.isoformat()
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(str(operation["startedAt"]))
            operation["durationMs"] = max(0, int((now - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Helpers ─────────────────────────────────────────────────────

    async def graph(self) -> ContinuationGraph:
        return await self.store.graph()

    def discover_transcripts(self, sessions_dir: Path | None = None) -> list[Path]:
        root = Path(sessions_dir or self.sessions_dir)
        if not root.exists():
            return []
        return sorted(path for path in root.rglob("*.jsonl") if is_tracked_transcript(path))

    def _publish_progress(self, event: ChainEvent) -> None:
        if self.events is not None:
            self.events.publish(event)

    def _publish_invalidation(self, event: InvalidationEvent) -> InvalidationEvent:
        if not event.is_empty:
            self.invalidations.publish(event)
        return event

    async def _sync_single_session(self, path: Path, force: bool = False) -> ScanResult | None:
        """Read, scan and upsert one transcript. Returns None when skipped."""
        file_path = str(path)
        try:
            stat = path.stat()
        except OSError:
            return None

        if not force:
            cached = await self.sync_repo.get_sync_state(file_path)
            if cached and cached["file_mtime"] == stat.st_mtime and cached.get("file_size", 0) == stat.st_size:
                return None

        t0 = time.monotonic()
        record, scan = await asyncio.to_thread(_read_and_scan, path)
        scan_ms = int((time.monotonic() - t0) * 1000)
        if record is None:
            return None
        if scan.error:
            record_scan_failure("transcript")
            logger.warning("Scan failed for session %s: %s", record.sessionId, scan.error)

        await self.session_repo.upsert(record, scan)
        await self.sync_repo.upsert_sync_state({
            "file_path": file_path,
            "session_id": record.sessionId,
            "file_mtime": stat.st_mtime,
            "file_size": stat.st_size,
            "last_synced": datetime.now(timezone.utc).isoformat(),
            "scan_ms": scan_ms,
        })
        return scan

    async def _remove_session_file(self, path: Path) -> str | None:
        file_path = str(path)
        state = await self.sync_repo.get_sync_state(file_path)
        session_id = (state or {}).get("session_id") or session_id_from_path(path)
        await self.sync_repo.delete_sync_state(file_path)
        if not session_id:
            return None
        row = await self.session_repo.get_by_id(session_id)
        if row and row.get("file_path") not in ("", file_path):
            # Same session id now lives in another file.
            return None
        await self.session_repo.delete(session_id)
        return session_id

    def _roots_for(self, session_ids: Iterable[str], graph: ContinuationGraph) -> set[str]:
        """Roots owning ``session_ids`` before (cached) and after (graph) a change."""
        roots: set[str] = set()
        for sid in session_ids:
            if self.cache is not None:
                previous = self.cache.root_of(sid)
                if previous:
                    roots.add(previous)
            if sid in graph.sessions:
                roots.add(find_root(sid, graph.edges, graph.sessions))
        return roots

    @staticmethod
    def _edge_changes(before: ContinuationGraph, after: ContinuationGraph) -> set[str]:
        touched: set[str] = set()
        old = {edge.childId: edge for edge in before.edges}
        new = {edge.childId: edge for edge in after.edges}
        for child_id in set(old) | set(new):
            a, b = old.get(child_id), new.get(child_id)
            if a != b:
                touched.add(child_id)
                for edge in (a, b):
                    if edge is not None:
                        touched.add(edge.parentId)
        return touched

    # ── Full sync ───────────────────────────────────────────────────

    async def sync_all(
        self,
        sessions_dir: Path | None = None,
        force: bool = False,
        operation_id: str | None = None,
        trigger: str = "api",
    ) -> dict[str, Any]:
        """Scan every transcript, rebuild all edges and invalidate the cache."""
        root = Path(sessions_dir or self.sessions_dir)
        stats: dict[str, Any] = {
            "sessions_synced": 0,
            "sessions_skipped": 0,
            "sessions_removed": 0,
            "scan_errors": 0,
            "duration_ms": 0,
            "operation_id": "",
        }
        if not operation_id:
            operation_id = await self._start_operation(
                "full_sync", trigger, {"force": bool(force), "sessionsDir": str(root)}
            )
        stats["operation_id"] = operation_id

        t0 = time.monotonic()
        try:
            async with self._sync_lock:
                with start_span("continuum.sync.full", {"sessions_dir": str(root), "force": bool(force)}):
                    await self._update_operation(operation_id, phase="discovery", message="Discovering transcripts")
                    paths = await asyncio.to_thread(self.discover_transcripts, root)
                    total = len(paths)

                    await self._update_operation(
                        operation_id,
                        phase="scanning",
                        message=f"Scanning {total} transcript(s)",
                        counters={"transcriptsTotal": total},
                    )
                    for batch, total_batches, start, end in progress_batches(total, config.SCAN_BATCH_SIZE):
                        for path in paths[start:end]:
                            scan = await self._sync_single_session(path, force=force)
                            if scan is None:
                                stats["sessions_skipped"] += 1
                                continue
                            stats["sessions_synced"] += 1
                            if scan.error:
                                stats["scan_errors"] += 1
                        progress = {"current": end, "total": total, "batch": batch, "totalBatches": total_batches}
                        await self._update_operation(operation_id, progress=progress)
                        self._publish_progress(
                            ChainEvent(kind="progress", message="Scanning transcripts", **progress)
                        )

                    await self._update_operation(operation_id, phase="cleanup", message="Removing deleted transcripts")
                    present = {str(path) for path in paths}
                    for state in await self.sync_repo.list_all():
                        if state["file_path"] in present:
                            continue
                        if await self._remove_session_file(Path(state["file_path"])):
                            stats["sessions_removed"] += 1

                    await self._update_operation(operation_id, phase="relationships", message="Rebuilding continuation edges")
                    report = await self.store.full_scan()

            elapsed = int((time.monotonic() - t0) * 1000)
            stats["duration_ms"] = elapsed
            stats["report"] = report.model_dump()
            record_scan("full", "ok", elapsed, count=stats["sessions_synced"])
            await self._finish_operation(operation_id, status="completed", stats=stats)
            self._publish_progress(ChainEvent(kind="complete", current=total, total=total, stats=stats["report"]))
            self._publish_invalidation(InvalidationEvent(isGlobal=True, reason="full_sync"))
            logger.info(
                "Full sync complete: %d synced, %d skipped, %d removed, %d edges in %dms",
                stats["sessions_synced"],
                stats["sessions_skipped"],
                stats["sessions_removed"],
                report.edges,
                elapsed,
            )
            return stats
        except Exception as exc:
            record_scan("full", "error", (time.monotonic() - t0) * 1000, count=0)
            await self._finish_operation(operation_id, status="failed", stats=stats, error=str(exc))
            self._publish_progress(ChainEvent(kind="error", message=str(exc)))
            raise

    # ── Incremental sync ────────────────────────────────────────────

    async def sync_changed_files(
        self,
        changed_files: list[tuple[str, Path]],
        operation_id: str | None = None,
        trigger: str = "watcher",
    ) -> InvalidationEvent:
        """Sync specific changed transcripts. Used by the file watcher.

        changed_files: list of (change_type, path) where change_type is
        'added' | 'modified' | 'deleted'.
        """
        if not operation_id and trigger != "watcher":
            operation_id = await self._start_operation(
                "sync_changed_files", trigger, {"changedCount": len(changed_files)}
            )

        t0 = time.monotonic()
        changed: set[str] = set()
        removed: set[str] = set()
        unresolved = False
        try:
            async with self._sync_lock:
                before = self.store.snapshot()
                for change_type, path in changed_files:
                    if not is_tracked_transcript(path):
                        continue
                    if change_type == "deleted" or not path.exists():
                        sid = await self._remove_session_file(path)
                        if sid:
                            removed.add(sid)
                        continue
                    scan = await self._sync_single_session(path)
                    if scan is None:
                        continue
                    if scan.error:
                        unresolved = True
                    if scan.sessionId:
                        changed.add(scan.sessionId)

                after = await self.store.rescan(changed, removed)

            affected = changed | removed | self._edge_changes(before, after)
            roots = self._roots_for(affected, after)
            for sid in changed:
                if sid not in after.sessions:
                    unresolved = True

            event = InvalidationEvent(
                rootIds=sorted(roots),
                sessionIds=sorted(affected),
                isGlobal=unresolved,
                reason=trigger,
            )
            elapsed = (time.monotonic() - t0) * 1000
            record_scan("partial", "ok", elapsed, count=len(changed) + len(removed))
            await self._finish_operation(
                operation_id,
                status="completed",
                stats={"changed": len(changed), "removed": len(removed), "roots": len(roots)},
            )
            if changed or removed:
                logger.info(
                    "Changed-file sync: %d changed, %d removed, %d root(s) affected%s",
                    len(changed),
                    len(removed),
                    len(roots),
                    " (global)" if unresolved else "",
                )
            return self._publish_invalidation(event)
        except Exception as exc:
            record_scan("partial", "error", (time.monotonic() - t0) * 1000, count=0)
            await self._finish_operation(operation_id, status="failed", error=str(exc))
            raise

    async def heal_orphans(self, trigger: str = "schedule") -> InvalidationEvent:
        """Re-check orphaned edges; reattach subtrees whose parent appeared."""
        async with self._sync_lock:
            before = self.store.snapshot()
            refreshed = await self.store.refresh_orphans()
            after = self.store.snapshot()

        flipped = set(refreshed.healed) | set(refreshed.orphaned)
        if not flipped:
            return InvalidationEvent(reason=trigger)

        affected = flipped | self._edge_changes(before, after)
        roots = self._roots_for(affected, after)
        logger.info(
            "Orphan check (%s): %d healed, %d newly orphaned",
            trigger,
            len(refreshed.healed),
            len(refreshed.orphaned),
        )
        return self._publish_invalidation(
            InvalidationEvent(rootIds=sorted(roots), sessionIds=sorted(affected), reason="heal")
        )

    async def resolve_session_path(self, session_id: str) -> Path:
        row = await self.session_repo.get_by_id(session_id)
        if not row or not row.get("file_path"):
            raise ChainNotFoundError(session_id)
        return Path(row["file_path"])
