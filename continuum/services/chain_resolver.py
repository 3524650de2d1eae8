"""Resolve continuation edges into chain trees.

Resolution is pure: the same edges and session index always produce the same
tree. Traversal is iterative so very long chains cannot exhaust the stack.
"""
from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Iterable, Mapping

from continuum import config
from continuum.errors import ChainNotFoundError
from continuum.models import (
    ChainNode,
    ChainStats,
    ContinuationEdge,
    DroppedEdge,
    ResolvedChain,
    SessionRecord,
)

logger = logging.getLogger("continuum.resolver")


def _child_sort_key(edge: ContinuationEdge) -> tuple[int, int, str]:
    return (edge.order, edge.childStartedTimestamp or 0, edge.childId)


def build_adjacency(edges: Iterable[ContinuationEdge]) -> dict[str, list[ContinuationEdge]]:
    """Map ``parentId`` to its child edges in sibling order."""
    adjacency: dict[str, list[ContinuationEdge]] = defaultdict(list)
    for edge in edges:
        adjacency[edge.parentId].append(edge)
    for group in adjacency.values():
        group.sort(key=_child_sort_key)
    return dict(adjacency)


def _canonical_edges(edges: Iterable[ContinuationEdge]) -> dict[str, ContinuationEdge]:
    """First non-self-referencing edge per child in (parent, sibling) order."""
    canonical: dict[str, ContinuationEdge] = {}
    for edge in sorted(edges, key=lambda e: (e.parentId, *_child_sort_key(e))):
        if edge.childId == edge.parentId:
            continue
        canonical.setdefault(edge.childId, edge)
    return canonical


def _walk_to_root(
    session_id: str,
    canonical: Mapping[str, ContinuationEdge],
    sessions: Mapping[str, SessionRecord],
) -> str:
    path: list[str] = [session_id]
    positions = {session_id: 0}
    current = session_id
    while True:
        edge = canonical.get(current)
        if edge is None or edge.parentId not in sessions:
            return current
        parent = edge.parentId
        if parent in positions:
            # Pure cycle: every member agrees on the smallest id.
            return min(path[positions[parent]:])
        positions[parent] = len(path)
        path.append(parent)
        current = parent


def find_root(
    session_id: str,
    edges: Iterable[ContinuationEdge],
    sessions: Mapping[str, SessionRecord],
) -> str:
    """Walk parent links up to the root of ``session_id``'s tree.

    Stops at a session with no edge or whose parent is unknown (an orphan
    root). Raises ``ChainNotFoundError`` for unknown sessions.
    """
    if session_id not in sessions:
        raise ChainNotFoundError(session_id)
    return _walk_to_root(session_id, _canonical_edges(edges), sessions)


def _resolve(
    root_id: str,
    adjacency: Mapping[str, list[ContinuationEdge]],
    canonical: Mapping[str, ContinuationEdge],
    sessions: Mapping[str, SessionRecord],
) -> ResolvedChain:
    root_edge = canonical.get(root_id)
    root = ChainNode(
        sessionId=root_id,
        session=sessions[root_id],
        parentId=root_edge.parentId if root_edge else None,
        order=root_edge.order if root_edge else 0,
        isOrphaned=bool(root_edge and root_edge.parentId not in sessions),
        isActiveContinuation=bool(root_edge and root_edge.isActiveContinuation),
    )

    dropped: list[DroppedEdge] = []
    warnings: list[str] = []
    member_ids: list[str] = [root_id]
    visited: set[str] = {root_id}
    queue: deque[ChainNode] = deque([root])

    total = 1
    branch_count = 0
    orphan_count = 1 if root.isOrphaned else 0
    max_depth = 0
    leaf_count = 0
    active_tip = root_id

    while queue:
        node = queue.popleft()
        attached: list[ChainNode] = []
        for edge in adjacency.get(node.sessionId, ()):
            child_id = edge.childId
            if child_id == node.sessionId:
                dropped.append(DroppedEdge(childId=child_id, parentId=edge.parentId, reason="self_reference"))
                warnings.append(f"Dropped self-referencing edge on {child_id}")
                continue
            if canonical.get(child_id) is not edge:
                dropped.append(DroppedEdge(childId=child_id, parentId=edge.parentId, reason="duplicate_child"))
                warnings.append(f"Dropped duplicate parent {edge.parentId} for {child_id}")
                continue
            if child_id in visited:
                dropped.append(DroppedEdge(childId=child_id, parentId=edge.parentId, reason="cycle"))
                warnings.append(f"Dropped cyclic edge {child_id} -> {edge.parentId}")
                continue
            session = sessions.get(child_id)
            if session is None:
                logger.debug("Child %s of %s missing from session index", child_id, node.sessionId)
                continue
            visited.add(child_id)
            attached.append(
                ChainNode(
                    sessionId=child_id,
                    session=session,
                    parentId=node.sessionId,
                    depth=node.depth + 1,
                    order=edge.order,
                    isActiveContinuation=edge.isActiveContinuation,
                )
            )

        if not attached:
            leaf_count += 1
            continue

        if len(attached) > 1:
            branch_count += 1
        active_child = next((c for c in attached if c.isActiveContinuation), attached[-1])
        for index, child in enumerate(attached):
            child.siblingIndex = index
            child.siblingCount = len(attached)
            child.isActivePath = node.isActivePath and child is active_child
            if child.isActivePath:
                active_tip = child.sessionId
            if child.depth > max_depth:
                max_depth = child.depth
            member_ids.append(child.sessionId)
            queue.append(child)
        node.isBranchPoint = len(attached) > 1
        node.children = attached
        total += len(attached)

    for message in warnings:
        logger.warning("Chain %s: %s", root_id, message)

    return ResolvedChain(
        rootId=root_id,
        root=root,
        stats=ChainStats(
            totalCount=total,
            branchCount=branch_count,
            orphanCount=orphan_count,
            maxDepth=max_depth,
            leafCount=leaf_count,
        ),
        memberIds=member_ids,
        droppedEdges=dropped,
        warnings=warnings,
        activeTipId=active_tip,
    )


def resolve_chain(
    root_id: str,
    edges: Iterable[ContinuationEdge],
    sessions: Mapping[str, SessionRecord],
) -> ResolvedChain:
    """Build the tree rooted at ``root_id`` in one breadth-first pass.

    Offending edges (cycles, duplicate parents, self references) are dropped
    and reported on the result instead of raised.
    """
    if root_id not in sessions:
        raise ChainNotFoundError(root_id)
    edge_list = list(edges)
    return _resolve(root_id, build_adjacency(edge_list), _canonical_edges(edge_list), sessions)


def resolve_forest(
    edges: Iterable[ContinuationEdge],
    sessions: Mapping[str, SessionRecord],
) -> list[ResolvedChain]:
    """Resolve every tree; each known session lands in exactly one of them."""
    edge_list = list(edges)
    adjacency = build_adjacency(edge_list)
    canonical = _canonical_edges(edge_list)

    chains: list[ResolvedChain] = []
    placed: set[str] = set()
    natural_roots = sorted(
        sid for sid in sessions if canonical.get(sid) is None or canonical[sid].parentId not in sessions
    )
    for root_id in natural_roots:
        chain = _resolve(root_id, adjacency, canonical, sessions)
        placed.update(chain.memberIds)
        chains.append(chain)

    # Whatever is left hangs off a cycle.
    for sid in sorted(sessions):
        if sid in placed:
            continue
        root_id = _walk_to_root(sid, canonical, sessions)
        chain = _resolve(root_id, adjacency, canonical, sessions)
        placed.update(chain.memberIds)
        chains.append(chain)
    return chains


def audit_edges(
    edges: Iterable[ContinuationEdge],
    sessions: Mapping[str, SessionRecord],
    max_depth: int | None = None,
) -> dict[str, list[dict[str, object]]]:
    """Report integrity problems across the whole edge list."""
    limit = config.MAX_CHAIN_DEPTH if max_depth is None else max_depth
    edge_list = list(edges)
    report: dict[str, list[dict[str, object]]] = {
        "cycles": [],
        "duplicates": [],
        "selfReferences": [],
        "orphans": [],
        "tooDeep": [],
    }
    for edge in edge_list:
        if edge.parentId not in sessions:
            report["orphans"].append({"childId": edge.childId, "parentId": edge.parentId})

    for chain in resolve_forest(edge_list, sessions):
        for dropped in chain.droppedEdges:
            key = {
                "cycle": "cycles",
                "duplicate_child": "duplicates",
                "self_reference": "selfReferences",
            }[dropped.reason]
            entry = {"rootId": chain.rootId, "childId": dropped.childId, "parentId": dropped.parentId}
            if entry not in report[key]:
                report[key].append(entry)
        if chain.stats.maxDepth > limit:
            report["tooDeep"].append({"rootId": chain.rootId, "maxDepth": chain.stats.maxDepth})
    return report
