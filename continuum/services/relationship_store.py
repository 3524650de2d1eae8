"""Continuation edge list: build, partially rebuild, and persist.

Edges are derived from per-session scan results. The pure helpers below
never mutate their inputs; ``RelationshipStore`` holds the current
``ContinuationGraph`` and swaps it for a new one after every write.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Collection, Iterable, Mapping, NamedTuple

import aiosqlite

from continuum import config
from continuum.errors import SessionIndexUnavailableError
from continuum.models import (
    BoundaryMarker,
    ContinuationEdge,
    ContinuationGraph,
    ScanReport,
    ScanResult,
    SessionRecord,
)

logger = logging.getLogger("continuum.store")


class OrphanRefresh(NamedTuple):
    edges: list[ContinuationEdge]
    healed: list[str]
    orphaned: list[str]


def _scan_list(scans: Mapping[str, ScanResult] | Iterable[ScanResult]) -> list[ScanResult]:
    if isinstance(scans, Mapping):
        return list(scans.values())
    return list(scans)


def _sort_key(edge: ContinuationEdge) -> tuple[int, str]:
    return (edge.childStartedTimestamp or 0, edge.childId)


def _finalize_group(
    parent_id: str,
    group: list[ContinuationEdge],
    known_ids: Collection[str],
    marker: BoundaryMarker | None,
    keep_split_info: bool = False,
) -> list[ContinuationEdge]:
    """Order one sibling group and recompute its per-edge flags."""
    ordered = sorted(group, key=_sort_key)
    is_orphaned = parent_id not in known_ids
    last_active = -1
    if not is_orphaned:
        last_active = len(ordered) - 1

    result: list[ContinuationEdge] = []
    for index, edge in enumerate(ordered):
        update: dict[str, Any] = {
            "order": index,
            "isOrphaned": is_orphaned,
            "isActiveContinuation": index == last_active,
        }
        if not keep_split_info:
            update["splitReason"] = (marker.message if marker and marker.message else config.DEFAULT_SPLIT_REASON)
            update["splitTimestamp"] = marker.timestamp if marker else None
            update["hasParentMarker"] = marker is not None
        result.append(edge.model_copy(update=update))
    return result


def _edge_from_scan(scan: ScanResult) -> ContinuationEdge | None:
    if scan.error or not scan.isChild or not scan.parentId:
        return None
    if scan.parentId == scan.sessionId:
        return None
    return ContinuationEdge(
        childId=scan.sessionId,
        parentId=scan.parentId,
        childStartedTimestamp=scan.childStartedAt,
        hasChildMarker=True,
    )


def build_edges(
    scans: Mapping[str, ScanResult] | Iterable[ScanResult],
    known_session_ids: Collection[str],
) -> list[ContinuationEdge]:
    """Rebuild every edge from scratch.

    Child markers are grouped by parent, each group is sorted by
    ``childStartedAt`` (child id breaks ties) and numbered from zero. The
    last non-orphaned edge of a group is its active continuation.
    """
    scan_list = _scan_list(scans)
    markers = {scan.sessionId: scan.parentMarker for scan in scan_list if scan.isParent and not scan.error}

    groups: dict[str, list[ContinuationEdge]] = defaultdict(list)
    seen_children: set[str] = set()
    for scan in scan_list:
        edge = _edge_from_scan(scan)
        if edge is None or edge.childId in seen_children:
            continue
        seen_children.add(edge.childId)
        groups[edge.parentId].append(edge)

    edges: list[ContinuationEdge] = []
    for parent_id in sorted(groups):
        edges.extend(_finalize_group(parent_id, groups[parent_id], known_session_ids, markers.get(parent_id)))
    return edges


def rescan_edges(
    existing_edges: Iterable[ContinuationEdge],
    scans: Mapping[str, ScanResult] | Iterable[ScanResult],
    known_session_ids: Collection[str],
    removed_session_ids: Collection[str] = (),
) -> list[ContinuationEdge]:
    """Apply rescanned sessions to an existing edge list.

    Edges for rescanned or removed children are replaced; only the parent
    groups those children left or joined (and groups whose parent was
    rescanned) are re-sorted. Errored scans leave the previous edge in place.
    """
    scan_list = [scan for scan in _scan_list(scans) if not scan.error]
    rescanned = {scan.sessionId for scan in scan_list}
    removed = set(removed_session_ids)
    markers = {scan.sessionId: scan.parentMarker for scan in scan_list if scan.isParent}

    affected_parents: set[str] = set()
    kept: list[ContinuationEdge] = []
    for edge in existing_edges:
        if edge.childId in rescanned or edge.childId in removed:
            affected_parents.add(edge.parentId)
            continue
        if edge.parentId in rescanned or edge.parentId in removed:
            affected_parents.add(edge.parentId)
        kept.append(edge)

    for scan in scan_list:
        if scan.sessionId in removed:
            continue
        edge = _edge_from_scan(scan)
        if edge is not None:
            kept.append(edge)
            affected_parents.add(edge.parentId)

    untouched: list[ContinuationEdge] = []
    groups: dict[str, list[ContinuationEdge]] = defaultdict(list)
    for edge in kept:
        if edge.parentId in affected_parents:
            groups[edge.parentId].append(edge)
        else:
            untouched.append(edge)

    rebuilt: list[ContinuationEdge] = []
    for parent_id in sorted(groups):
        group = groups[parent_id]
        if parent_id in markers or parent_id in rescanned or parent_id in removed:
            rebuilt.extend(_finalize_group(parent_id, group, known_session_ids, markers.get(parent_id)))
            continue
        # Parent not rescanned: carry its split info over from a sibling that
        # already had it.
        template = next((edge for edge in group if edge.hasParentMarker or edge.splitTimestamp), None)
        finalized = _finalize_group(parent_id, group, known_session_ids, None, keep_split_info=True)
        rebuilt.extend(
            edge.model_copy(
                update={
                    "splitReason": template.splitReason if template else (edge.splitReason or config.DEFAULT_SPLIT_REASON),
                    "splitTimestamp": template.splitTimestamp if template else edge.splitTimestamp,
                    "hasParentMarker": template.hasParentMarker if template else edge.hasParentMarker,
                }
            )
            for edge in finalized
        )

    return untouched + rebuilt


def refresh_orphan_flags(
    edges: Iterable[ContinuationEdge],
    known_session_ids: Collection[str],
) -> OrphanRefresh:
    """Re-run the parent existence check against the current session index.

    Groups whose orphan state flips are re-flagged as a whole; other edges are
    returned unchanged.
    """
    edge_list = list(edges)
    flipped: set[str] = set()
    for edge in edge_list:
        if edge.isOrphaned == (edge.parentId in known_session_ids):
            flipped.add(edge.parentId)

    if not flipped:
        return OrphanRefresh(edge_list, [], [])

    groups: dict[str, list[ContinuationEdge]] = defaultdict(list)
    result: list[ContinuationEdge] = []
    for edge in edge_list:
        if edge.parentId in flipped:
            groups[edge.parentId].append(edge)
        else:
            result.append(edge)

    healed: list[str] = []
    orphaned: list[str] = []
    for parent_id in sorted(groups):
        before = {edge.childId: edge.isOrphaned for edge in groups[parent_id]}
        for edge in _finalize_group(parent_id, groups[parent_id], known_session_ids, None, keep_split_info=True):
            if before[edge.childId] and not edge.isOrphaned:
                healed.append(edge.childId)
            elif not before[edge.childId] and edge.isOrphaned:
                orphaned.append(edge.childId)
            result.append(edge)
    return OrphanRefresh(result, healed, orphaned)


def summarize_edges(edges: Iterable[ContinuationEdge]) -> dict[str, int]:
    """Aggregate relationship statistics over an edge list."""
    total = 0
    active = 0
    orphaned = 0
    with_boundary = 0
    group_sizes: dict[str, int] = defaultdict(int)
    for edge in edges:
        total += 1
        group_sizes[edge.parentId] += 1
        if edge.isActiveContinuation:
            active += 1
        if edge.isOrphaned:
            orphaned += 1
        if edge.hasParentMarker:
            with_boundary += 1
    return {
        "totalRelationships": total,
        "uniqueParents": len(group_sizes),
        "activeContinuations": active,
        "orphanedContinuations": orphaned,
        "withCompactBoundary": with_boundary,
        "largestSiblingGroup": max(group_sizes.values(), default=0),
    }


class RelationshipStore:
    """Owns the persisted edge list and the in-memory graph snapshot."""

    def __init__(self, session_repo: Any, continuation_repo: Any):
        self.session_repo = session_repo
        self.continuation_repo = continuation_repo
        self._graph = ContinuationGraph()
        self._lock = asyncio.Lock()
        self._loaded = False

    def snapshot(self) -> ContinuationGraph:
        return self._graph

    async def graph(self) -> ContinuationGraph:
        """Current snapshot, loading it from the database on first use."""
        if not self._loaded:
            await self.load()
        return self._graph

    def _install(self, edges: Iterable[ContinuationEdge], sessions: Mapping[str, SessionRecord]) -> ContinuationGraph:
        self._loaded = True
        self._graph = ContinuationGraph(edges, sessions, version=self._graph.version + 1)
        return self._graph

    async def _load_sessions(self) -> dict[str, SessionRecord]:
        rows = await self.session_repo.list_all()
        sessions: dict[str, SessionRecord] = {}
        for row in rows:
            record = SessionRecord.from_row(row)
            if record.sessionId:
                sessions[record.sessionId] = record
        return sessions

    async def load(self) -> ContinuationGraph:
        """Read sessions and edges from the database into a fresh snapshot."""
        async with self._lock:
            try:
                sessions = await self._load_sessions()
                edges = await self.continuation_repo.list_all()
            except (OSError, aiosqlite.Error) as exc:
                raise SessionIndexUnavailableError(f"Session index unreadable: {exc}") from exc
            graph = self._install(edges, sessions)
        logger.info("Loaded %d sessions and %d continuation edges", len(graph.sessions), len(graph.edges))
        return graph

    async def full_scan(self) -> ScanReport:
        """Rebuild every edge from the persisted scan results."""
        started = time.monotonic()
        async with self._lock:
            sessions = await self._load_sessions()
            scans = await self.session_repo.list_scans()
            edges = build_edges(scans, sessions.keys())
            await self.continuation_repo.replace_all(edges)
            self._install(edges, sessions)

        report = ScanReport(
            processed=len(scans),
            errored=sum(1 for scan in scans.values() if scan.error),
            orphaned=sum(1 for edge in edges if edge.isOrphaned),
            childrenFound=sum(1 for scan in scans.values() if scan.isChild and not scan.error),
            parentsFound=sum(1 for scan in scans.values() if scan.isParent and not scan.error),
            edges=len(edges),
            errors={sid: scan.error for sid, scan in scans.items() if scan.error},
            durationMs=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Full continuation scan: processed=%d errored=%d orphaned=%d edges=%d (%dms)",
            report.processed,
            report.errored,
            report.orphaned,
            report.edges,
            report.durationMs,
        )
        return report

    async def rescan(
        self,
        session_ids: Iterable[str],
        removed_session_ids: Iterable[str] = (),
    ) -> ContinuationGraph:
        """Apply fresh scans for ``session_ids`` and drop ``removed_session_ids``."""
        changed = {sid for sid in session_ids if sid}
        removed = {sid for sid in removed_session_ids if sid}
        if not changed and not removed:
            return self._graph

        async with self._lock:
            current = self._graph
            sessions = dict(current.sessions)
            for sid in removed:
                sessions.pop(sid, None)
            for row in await self.session_repo.get_many(sorted(changed)):
                record = SessionRecord.from_row(row)
                if record.sessionId:
                    sessions[record.sessionId] = record

            scans = await self.session_repo.get_scans(sorted(changed))
            # Parents of rescanned children keep their boundary info in the
            # persisted scan, so load those too.
            parent_ids = {scan.parentId for scan in scans.values() if scan.parentId} - changed
            if parent_ids:
                scans.update(await self.session_repo.get_scans(sorted(parent_ids)))

            edges = rescan_edges(current.edges, scans, sessions.keys(), removed)
            refreshed = refresh_orphan_flags(edges, sessions.keys())
            if refreshed.healed:
                logger.info("Healed %d orphaned continuation(s)", len(refreshed.healed))

            previous = {edge.childId: edge for edge in current.edges}
            after = {edge.childId: edge for edge in refreshed.edges}
            stale = [cid for cid in previous if cid not in after]
            dirty = [edge for cid, edge in after.items() if previous.get(cid) != edge]
            if stale:
                await self.continuation_repo.delete_by_children(stale)
            if dirty:
                await self.continuation_repo.upsert_many(dirty)
            graph = self._install(refreshed.edges, sessions)

        logger.debug(
            "Partial rescan: %d changed, %d removed, %d edges written, %d edges deleted",
            len(changed),
            len(removed),
            len(dirty),
            len(stale),
        )
        return graph

    async def refresh_orphans(self) -> OrphanRefresh:
        """Re-check orphaned edges against the session index and persist flips."""
        async with self._lock:
            current = self._graph
            refreshed = refresh_orphan_flags(current.edges, current.sessions.keys())
            if refreshed.healed or refreshed.orphaned:
                changed_ids = set(refreshed.healed) | set(refreshed.orphaned)
                await self.continuation_repo.upsert_many(
                    [edge for edge in refreshed.edges if edge.childId in changed_ids]
                )
                self._install(refreshed.edges, current.sessions)
        return refreshed

    async def children_of(self, parent_id: str) -> list[ContinuationEdge]:
        """Persisted child edges of ``parent_id`` in sibling order."""
        try:
            return await self.continuation_repo.list_by_parent(parent_id)
        except (OSError, aiosqlite.Error) as exc:
            raise SessionIndexUnavailableError(f"Continuation store unreadable: {exc}") from exc

    async def orphaned_edges(self) -> list[ContinuationEdge]:
        """Persisted edges whose parent was missing at the last existence check."""
        try:
            return await self.continuation_repo.list_orphaned()
        except (OSError, aiosqlite.Error) as exc:
            raise SessionIndexUnavailableError(f"Continuation store unreadable: {exc}") from exc

    def counts(self) -> dict[str, int]:
        graph = self._graph
        stats = summarize_edges(graph.edges)
        stats["sessions"] = len(graph.sessions)
        return stats
