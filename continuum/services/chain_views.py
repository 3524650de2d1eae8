"""Read-only projections over a resolved chain.

Nothing here is cached; every function derives its answer from the chain it
is handed.
"""
from __future__ import annotations

from typing import Iterator, Union

from continuum import config
from continuum.models import (
    BranchPointInfo,
    Breadcrumb,
    BreadcrumbSegment,
    ChainNode,
    ChainView,
    ContinuationMetadata,
    FlatDescendant,
    HighlightInfo,
    HighlightRole,
    LinearPath,
    ResolvedChain,
)

ChainLike = Union[ResolvedChain, ChainNode]


def _root(chain: ChainLike) -> ChainNode:
    return chain.root if isinstance(chain, ResolvedChain) else chain


def iter_preorder(node: ChainNode) -> Iterator[ChainNode]:
    """Depth-first, children in sibling order."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def index_nodes(root: ChainLike) -> dict[str, ChainNode]:
    return {node.sessionId: node for node in iter_preorder(_root(root))}


def _ancestry(index: dict[str, ChainNode], session_id: str) -> list[ChainNode]:
    """Nodes from the tree root down to ``session_id`` (inclusive)."""
    path: list[ChainNode] = []
    node = index.get(session_id)
    while node is not None:
        path.append(node)
        if node.depth == 0 or not node.parentId:
            break
        node = index.get(node.parentId)
    path.reverse()
    return path


def linear_path(chain: ChainLike, target_id: str) -> LinearPath | None:
    """Root-to-target path with the branch points it passes through.

    Returns ``None`` when ``target_id`` is not part of the chain.
    """
    index = index_nodes(chain)
    if target_id not in index:
        return None
    nodes = _ancestry(index, target_id)
    branch_points = [
        BranchPointInfo(
            branchPointId=node.sessionId,
            branchCount=len(node.children),
            siblingIds=[child.sessionId for child in node.children],
            depth=node.depth,
        )
        for node in nodes[:-1]
        if node.isBranchPoint
    ]
    return LinearPath(
        sessionIds=[node.sessionId for node in nodes],
        nodes=nodes,
        length=len(nodes),
        isActivePath=nodes[-1].isActivePath,
        branchPoints=branch_points,
    )


def collapse_breadcrumb(path: LinearPath, max_visible: int | None = None) -> Breadcrumb:
    """Fit a path into a breadcrumb of at most ``max_visible`` segments.

    Long paths keep the root, the immediate parent and the current node and
    fold everything between them into one collapsed segment.
    """
    limit = config.BREADCRUMB_MAX_SEGMENTS if max_visible is None else max_visible
    ids = path.sessionIds
    branch_ids = {bp.branchPointId for bp in path.branchPoints}
    last = len(ids) - 1

    def visible(index: int) -> BreadcrumbSegment:
        sid = ids[index]
        return BreadcrumbSegment(
            type="visible",
            sessionId=sid,
            isRoot=index == 0,
            isCurrent=index == last,
            isBranchPoint=sid in branch_ids,
        )

    if len(ids) <= max(limit, 3):
        return Breadcrumb(segments=[visible(i) for i in range(len(ids))], hiddenCount=0)

    hidden = ids[1:-2]
    segments = [
        visible(0),
        BreadcrumbSegment(type="collapsed", hiddenCount=len(hidden), hiddenIds=list(hidden)),
        visible(last - 1),
        visible(last),
    ]
    return Breadcrumb(segments=segments, hiddenCount=len(hidden))


def classify_highlight(chain: ChainLike, selected_id: str, candidate_id: str) -> HighlightRole:
    """Relate ``candidate_id`` to the selected session.

    Any other member of the same tree that is neither ancestor nor descendant
    counts as a sibling; sessions outside the tree get ``none``.
    """
    index = index_nodes(chain)
    if selected_id not in index or candidate_id not in index:
        return "none"
    if selected_id == candidate_id:
        return "clicked"
    if any(node.sessionId == candidate_id for node in _ancestry(index, selected_id)):
        return "ancestor"
    if any(node.sessionId == selected_id for node in _ancestry(index, candidate_id)):
        return "descendant"
    return "sibling"


def highlight_map(chain: ChainLike, selected_id: str) -> dict[str, HighlightInfo]:
    """Highlight info for every member, keyed by session id.

    ``position`` is the 1-based depth-first position, ``distance`` is signed
    (negative for ancestors, 0 for siblings sharing the selected parent).
    """
    root = _root(chain)
    index = index_nodes(root)
    selected = index.get(selected_id)
    if selected is None:
        return {}

    ancestor_ids = {node.sessionId for node in _ancestry(index, selected_id)[:-1]}
    total = len(index)
    result: dict[str, HighlightInfo] = {}
    descendants: set[str] = set()

    for position, node in enumerate(iter_preorder(root), start=1):
        sid = node.sessionId
        if sid == selected_id:
            role: HighlightRole = "clicked"
            distance = 0
        elif sid in ancestor_ids:
            role = "ancestor"
            distance = node.depth - selected.depth
        elif node.parentId == selected_id or node.parentId in descendants:
            role = "descendant"
            distance = node.depth - selected.depth
            descendants.add(sid)
        else:
            role = "sibling"
            same_parent = selected.parentId is not None and node.parentId == selected.parentId
            distance = 0 if same_parent else node.depth - selected.depth
        result[sid] = HighlightInfo(
            role=role,
            position=position,
            total=total,
            distance=distance,
            isRoot=sid == root.sessionId,
        )
    return result


def should_render_as_tree(node: ChainNode) -> bool:
    return any(current.isBranchPoint for current in iter_preorder(node))


def build_chain_view(chain: ChainLike) -> ChainView:
    root = _root(chain)
    ordered = [node.sessionId for node in iter_preorder(root)]
    if should_render_as_tree(root):
        return ChainView(rootId=root.sessionId, mode="tree", tree=root, sessionIds=ordered)
    return ChainView(rootId=root.sessionId, mode="linear", sessionIds=ordered)


def flatten_descendants(chain: ChainLike, session_id: str | None = None) -> list[FlatDescendant]:
    """Every descendant of ``session_id`` (default: the root), depth first."""
    index = index_nodes(chain)
    start = index.get(session_id) if session_id else _root(chain)
    if start is None:
        return []
    flat: list[FlatDescendant] = []
    for node in iter_preorder(start):
        if node is start:
            continue
        flat.append(
            FlatDescendant(
                sessionId=node.sessionId,
                parentId=node.parentId or "",
                depth=node.depth,
                order=node.order,
                isActiveContinuation=node.isActiveContinuation,
            )
        )
    return flat


def session_metadata(chain: ChainLike, session_id: str) -> ContinuationMetadata | None:
    """Badge data for one session: its place in the chain and its children."""
    node = index_nodes(chain).get(session_id)
    if node is None:
        return None
    return ContinuationMetadata(
        sessionId=session_id,
        rootId=_root(chain).sessionId,
        continuationOf=node.parentId,
        isChild=node.parentId is not None,
        isParent=bool(node.children),
        depth=node.depth,
        position=node.order,
        childCount=len(node.children),
        isActiveContinuation=node.isActiveContinuation,
        isOrphaned=node.isOrphaned,
    )
