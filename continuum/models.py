"""Pydantic models shared by the engine and the HTTP surface."""
from __future__ import annotations

from types import MappingProxyType
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, Field

# ── Session index ───────────────────────────────────────────────────


class SessionRecord(BaseModel):
    sessionId: str
    filePath: str = ""
    projectPath: str = ""
    mtime: float = 0.0
    fileSize: int = 0
    messageCount: int = 0
    firstMessageAt: str = ""
    lastMessageAt: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SessionRecord":
        """Build a record from a DB row or loose dict.

        Inputs may name the identifier ``session_id``, ``id`` or ``sessionId``;
        only the canonical ``sessionId`` leaves this method.
        """
        session_id = str(
            row.get("sessionId") or row.get("session_id") or row.get("id") or ""
        ).strip()
        return cls(
            sessionId=session_id,
            filePath=str(row.get("filePath") or row.get("file_path") or ""),
            projectPath=str(row.get("projectPath") or row.get("project_path") or ""),
            mtime=float(row.get("mtime") or row.get("file_mtime") or 0.0),
            fileSize=int(row.get("fileSize") or row.get("file_size") or 0),
            messageCount=int(row.get("messageCount") or row.get("message_count") or 0),
            firstMessageAt=str(row.get("firstMessageAt") or row.get("first_message_at") or ""),
            lastMessageAt=str(row.get("lastMessageAt") or row.get("last_message_at") or ""),
        )


# ── Scanner output ──────────────────────────────────────────────────


class BoundaryMarker(BaseModel):
    timestamp: Optional[int] = None
    nextSessionId: Optional[str] = None
    message: str = ""


class ScanResult(BaseModel):
    sessionId: str = ""
    isChild: bool = False
    parentId: Optional[str] = None
    childStartedAt: Optional[int] = None
    isParent: bool = False
    parentMarker: Optional[BoundaryMarker] = None
    error: Optional[str] = None


class ScanReport(BaseModel):
    processed: int = 0
    errored: int = 0
    orphaned: int = 0
    childrenFound: int = 0
    parentsFound: int = 0
    edges: int = 0
    errors: dict[str, str] = Field(default_factory=dict)
    durationMs: int = 0


# ── Relationship store ──────────────────────────────────────────────


class ContinuationEdge(BaseModel):
    childId: str
    parentId: str
    order: int = 0
    splitReason: str = ""
    splitTimestamp: Optional[int] = None
    childStartedTimestamp: Optional[int] = None
    hasChildMarker: bool = True
    hasParentMarker: bool = False
    isOrphaned: bool = False
    isActiveContinuation: bool = False


class ContinuationGraph:
    """Immutable snapshot of the edge list and the session index.

    Replaced wholesale by the relationship store; readers holding an older
    snapshot keep a consistent view.
    """

    __slots__ = ("edges", "sessions", "version", "_by_child")

    def __init__(
        self,
        edges: list[ContinuationEdge] | tuple[ContinuationEdge, ...] = (),
        sessions: Mapping[str, SessionRecord] | None = None,
        version: int = 0,
    ):
        self.edges: tuple[ContinuationEdge, ...] = tuple(edges)
        self.sessions: Mapping[str, SessionRecord] = MappingProxyType(dict(sessions or {}))
        self.version = version
        by_child: dict[str, ContinuationEdge] = {}
        for edge in self.edges:
            by_child.setdefault(edge.childId, edge)
        self._by_child = MappingProxyType(by_child)

    def edge_for(self, child_id: str) -> ContinuationEdge | None:
        return self._by_child.get(child_id)


# ── Resolved chains ─────────────────────────────────────────────────


class ChainNode(BaseModel):
    sessionId: str
    session: SessionRecord
    parentId: Optional[str] = None
    depth: int = 0
    order: int = 0
    siblingIndex: int = 0
    siblingCount: int = 1
    isBranchPoint: bool = False
    isOrphaned: bool = False
    isActiveContinuation: bool = False
    isActivePath: bool = True
    children: list[ChainNode] = Field(default_factory=list)


class ChainStats(BaseModel):
    totalCount: int = 0
    branchCount: int = 0
    orphanCount: int = 0
    maxDepth: int = 0
    leafCount: int = 0


class DroppedEdge(BaseModel):
    childId: str
    parentId: str
    reason: Literal["cycle", "duplicate_child", "self_reference"]


class ResolvedChain(BaseModel):
    rootId: str
    root: ChainNode
    stats: ChainStats
    memberIds: list[str] = Field(default_factory=list)
    droppedEdges: list[DroppedEdge] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    activeTipId: str = ""


CacheStatus = Literal["empty", "loading", "ready", "stale", "error"]


class CachedChain(BaseModel):
    rootId: str
    requestedId: str = ""
    status: CacheStatus = "empty"
    chain: Optional[ResolvedChain] = None
    isLoading: bool = False
    isStale: bool = False
    lastError: Optional[str] = None
    generation: int = 0
    loadedAt: Optional[float] = None

    @property
    def hasContinuations(self) -> bool:
        return bool(self.chain and self.chain.stats.totalCount > 1)


# ── Notifications ───────────────────────────────────────────────────


class ChainEvent(BaseModel):
    kind: Literal["progress", "complete", "error"]
    rootId: str = ""
    current: int = 0
    total: int = 0
    batch: int = 0
    totalBatches: int = 0
    message: str = ""
    stats: dict[str, Any] = Field(default_factory=dict)


class InvalidationEvent(BaseModel):
    rootIds: list[str] = Field(default_factory=list)
    sessionIds: list[str] = Field(default_factory=list)
    isGlobal: bool = False
    reason: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.isGlobal and not self.rootIds


# ── View projections ────────────────────────────────────────────────


class BranchPointInfo(BaseModel):
    branchPointId: str
    branchCount: int
    siblingIds: list[str] = Field(default_factory=list)
    depth: int = 0


class LinearPath(BaseModel):
    sessionIds: list[str]
    nodes: list[ChainNode]
    length: int
    isActivePath: bool = True
    branchPoints: list[BranchPointInfo] = Field(default_factory=list)


class BreadcrumbSegment(BaseModel):
    type: Literal["visible", "collapsed"]
    sessionId: Optional[str] = None
    isRoot: bool = False
    isCurrent: bool = False
    isBranchPoint: bool = False
    hiddenCount: int = 0
    hiddenIds: list[str] = Field(default_factory=list)


class Breadcrumb(BaseModel):
    segments: list[BreadcrumbSegment]
    hiddenCount: int = 0


HighlightRole = Literal["clicked", "ancestor", "descendant", "sibling", "none"]


class HighlightInfo(BaseModel):
    role: HighlightRole
    position: int = 0
    total: int = 0
    distance: int = 0
    isRoot: bool = False


class ContinuationMetadata(BaseModel):
    sessionId: str
    rootId: str
    continuationOf: Optional[str] = None
    isChild: bool = False
    isParent: bool = False
    depth: int = 0
    position: int = 0
    childCount: int = 0
    isActiveContinuation: bool = False
    isOrphaned: bool = False


class FlatDescendant(BaseModel):
    sessionId: str
    parentId: str
    depth: int
    order: int
    isActiveContinuation: bool = False


class ChainView(BaseModel):
    rootId: str
    mode: Literal["tree", "linear"]
    tree: Optional[ChainNode] = None
    sessionIds: list[str] = Field(default_factory=list)
