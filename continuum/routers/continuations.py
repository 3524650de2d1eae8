"""Continuation chain API: resolved chains, paths, highlights and live events."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from continuum import config
from continuum.errors import ChainNotFoundError, SessionIndexUnavailableError
from continuum.models import CachedChain, ChainEvent, InvalidationEvent, ResolvedChain
from continuum.services.chain_views import (
    build_chain_view,
    classify_highlight,
    collapse_breadcrumb,
    flatten_descendants,
    highlight_map,
    index_nodes,
    linear_path,
    session_metadata,
)

logger = logging.getLogger("continuum.api")

continuations_router = APIRouter(prefix="/api/continuations", tags=["continuations"])
continuations_ws_router = APIRouter(tags=["continuations"])


class InvalidateRequest(BaseModel):
    sessionIds: list[str] = Field(default_factory=list)
    all: bool = False


def _get_cache(request: Request):
    cache = getattr(request.app.state, "chain_cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Continuation cache not initialized")
    return cache


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def _entry_payload(entry: CachedChain) -> dict[str, Any]:
    payload = entry.model_dump()
    payload["hasContinuations"] = entry.hasContinuations
    return payload


async def _resolved_chain(request: Request, session_id: str) -> ResolvedChain:
    """Wait for the chain containing ``session_id``; map engine errors to HTTP."""
    cache = _get_cache(request)
    try:
        entry = await cache.resolve(session_id)
    except ChainNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except SessionIndexUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    if entry.chain is None:
        raise HTTPException(status_code=500, detail=entry.lastError or f"Chain for {session_id} unavailable")
    return entry.chain


@continuations_router.get("/stats")
async def get_continuation_stats(request: Request):
    """Relationship statistics across every chain plus cache counters."""
    sync_engine = _get_sync_engine(request)
    cache = _get_cache(request)
    return {
        "status": "ok",
        "relationships": sync_engine.store.counts(),
        "cache": cache.get_stats(),
    }


@continuations_router.get("/orphans")
async def list_orphans(request: Request):
    sync_engine = _get_sync_engine(request)
    try:
        edges = await sync_engine.store.orphaned_edges()
    except SessionIndexUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    items = [edge.model_dump() for edge in edges]
    return {"status": "ok", "count": len(items), "items": items}


@continuations_router.post("/heal")
async def heal_orphans(request: Request):
    """Re-check orphans now; healed chains are invalidated and re-resolve on next read."""
    sync_engine = _get_sync_engine(request)
    event = await sync_engine.heal_orphans(trigger="api")
    return {"status": "ok", "invalidation": event.model_dump()}


@continuations_router.post("/invalidate")
async def invalidate_chains(request: Request, body: InvalidateRequest):
    cache = _get_cache(request)
    if body.all:
        count = cache.invalidate_all()
        return {"status": "ok", "invalidated": count}
    count = sum(1 for session_id in body.sessionIds if cache.invalidate(session_id))
    return {"status": "ok", "invalidated": count}


@continuations_router.get("/{session_id}/chain")
async def get_chain(request: Request, session_id: str, wait: bool = Query(False)):
    """Cached chain for any member session.

    Without ``wait`` the current entry is returned immediately (``loading`` on
    first access) and resolution continues in the background.
    """
    cache = _get_cache(request)
    if not wait:
        return _entry_payload(cache.get_or_resolve(session_id))
    try:
        entry = await cache.resolve(session_id)
    except ChainNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except SessionIndexUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _entry_payload(entry)


@continuations_router.get("/{session_id}/stats")
async def get_chain_stats(request: Request, session_id: str):
    chain = await _resolved_chain(request, session_id)
    return chain.stats


@continuations_router.get("/{session_id}/group")
async def get_session_group(request: Request, session_id: str):
    """Every session id in the chain, root first."""
    chain = await _resolved_chain(request, session_id)
    return {"rootId": chain.rootId, "sessionIds": chain.memberIds}


@continuations_router.get("/{session_id}/children")
async def get_direct_children(request: Request, session_id: str):
    sync_engine = _get_sync_engine(request)
    graph = await sync_engine.graph()
    if session_id not in graph.sessions:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    try:
        edges = await sync_engine.store.children_of(session_id)
    except SessionIndexUnavailableError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return [edge.model_dump() for edge in edges]


@continuations_router.get("/{root_id}/path/{target_id}")
async def get_linear_path(
    request: Request,
    root_id: str,
    target_id: str,
    maxVisible: int = Query(config.BREADCRUMB_MAX_SEGMENTS, ge=1, le=100),
):
    chain = await _resolved_chain(request, root_id)
    path = linear_path(chain, target_id)
    if path is None:
        raise HTTPException(status_code=404, detail=f"Session {target_id} is not part of chain {chain.rootId}")
    return {
        "rootId": chain.rootId,
        "path": path,
        "breadcrumb": collapse_breadcrumb(path, maxVisible),
    }


@continuations_router.get("/{selected_id}/highlight")
async def get_highlight_map(request: Request, selected_id: str):
    chain = await _resolved_chain(request, selected_id)
    return {
        "rootId": chain.rootId,
        "selectedId": selected_id,
        "items": highlight_map(chain, selected_id),
    }


@continuations_router.get("/{selected_id}/highlight/{candidate_id}")
async def get_highlight_role(request: Request, selected_id: str, candidate_id: str):
    chain = await _resolved_chain(request, selected_id)
    return {
        "selectedId": selected_id,
        "candidateId": candidate_id,
        "role": classify_highlight(chain, selected_id, candidate_id),
    }


@continuations_router.get("/{session_id}/view")
async def get_chain_view(request: Request, session_id: str):
    chain = await _resolved_chain(request, session_id)
    return build_chain_view(chain)


@continuations_router.get("/{session_id}/metadata")
async def get_session_metadata(request: Request, session_id: str):
    """Child/parent flags, depth, position and child count for list badges."""
    chain = await _resolved_chain(request, session_id)
    metadata = session_metadata(chain, session_id)
    if metadata is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return metadata


@continuations_router.get("/{session_id}/descendants")
async def get_descendants(request: Request, session_id: str):
    chain = await _resolved_chain(request, session_id)
    if session_id not in index_nodes(chain):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return flatten_descendants(chain, session_id)


@continuations_ws_router.websocket("/ws/continuations")
async def continuation_events(websocket: WebSocket):
    """Stream chain progress/completion and invalidation events to one client."""
    await websocket.accept()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def _on_chain_event(event: ChainEvent) -> None:
        queue.put_nowait({"type": "chain", "data": event.model_dump()})

    def _on_invalidation(event: InvalidationEvent) -> None:
        queue.put_nowait({"type": "invalidation", "data": event.model_dump()})

    async def _forward() -> None:
        while True:
            message = await queue.get()
            await websocket.send_json(message)

    events = getattr(websocket.app.state, "events", None)
    invalidations = getattr(websocket.app.state, "invalidations", None)
    with contextlib.ExitStack() as stack:
        if events is not None:
            stack.enter_context(events.subscribe(_on_chain_event))
        if invalidations is not None:
            stack.enter_context(invalidations.subscribe(_on_invalidation))
        sender = asyncio.create_task(_forward())
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.debug("Continuation event client disconnected")
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
