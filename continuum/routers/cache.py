"""Cache + sync observability API."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from pydantic import BaseModel, Field

from continuum import config
from continuum.services.chain_resolver import audit_edges

logger = logging.getLogger("continuum.cache")

cache_router = APIRouter(prefix="/api/cache", tags=["cache"])


class SyncRequest(BaseModel):
    force: bool = True
    background: bool = True
    trigger: str = "api"


class ChangedPathSpec(BaseModel):
    path: str = Field(..., min_length=1)
    changeType: Literal["modified", "added", "deleted"] = "modified"


class SyncPathsRequest(BaseModel):
    paths: list[ChangedPathSpec]
    background: bool = False
    trigger: str = "api"


def _get_sync_engine(request: Request):
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    return sync_engine


def _is_under(path: Path, root: Path) -> bool:
    try:
        path.resolve(strict=False).relative_to(root.resolve(strict=False))
        return True
    except ValueError:
        return False


def _resolve_changed_path(raw_path: str, sessions_dir: Path) -> Path:
    candidate = Path(raw_path).expanduser()
    if not candidate.is_absolute():
        candidate = (sessions_dir / candidate).resolve(strict=False)
    else:
        candidate = candidate.resolve(strict=False)

    if not _is_under(candidate, sessions_dir):
        raise HTTPException(
            status_code=400,
            detail=f"Path outside sessions directory: {raw_path}",
        )
    return candidate


@cache_router.get("/status")
async def get_cache_status(request: Request):
    """Return sync engine, watcher and chain cache status, including live operations."""
    sync_engine = _get_sync_engine(request)
    watcher = getattr(request.app.state, "watcher", None)
    cache = getattr(request.app.state, "chain_cache", None)
    observability = await sync_engine.get_observability_snapshot()
    return {
        "status": "active",
        "sync_engine": "ready",
        "watcher": "running" if watcher is not None and watcher.is_running else "stopped",
        "sessionsDir": str(sync_engine.sessions_dir),
        "relationships": sync_engine.store.counts(),
        "chainCache": cache.get_stats() if cache is not None else {},
        "operations": observability,
    }


@cache_router.get("/operations")
async def list_cache_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent sync operations."""
    sync_engine = _get_sync_engine(request)
    operations = await sync_engine.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@cache_router.get("/operations/{operation_id}")
async def get_cache_operation(request: Request, operation_id: str):
    """Get one sync operation by ID."""
    sync_engine = _get_sync_engine(request)
    operation = await sync_engine.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation


@cache_router.post("/sync")
async def trigger_sync(request: Request, background_tasks: BackgroundTasks, body: SyncRequest):
    """Trigger a full transcript scan with operation tracking."""
    sync_engine = _get_sync_engine(request)

    if body.background:
        operation_id = await sync_engine.start_operation(
            "full_sync",
            trigger=body.trigger,
            metadata={"force": bool(body.force)},
        )
        background_tasks.add_task(
            sync_engine.sync_all,
            None,
            body.force,
            operation_id,
            body.trigger,
        )
        return {
            "status": "ok",
            "mode": "background",
            "message": "Sync triggered in background",
            "operationId": operation_id,
        }

    stats = await sync_engine.sync_all(None, body.force, None, body.trigger)
    operation_id = str(stats.get("operation_id") or "")
    operation = await sync_engine.get_operation(operation_id) if operation_id else None
    return {
        "status": "ok",
        "mode": "foreground",
        "operationId": operation_id,
        "stats": stats,
        "operation": operation,
    }


@cache_router.post("/sync-paths")
async def trigger_sync_paths(
    request: Request,
    background_tasks: BackgroundTasks,
    body: SyncPathsRequest,
):
    """Rescan a targeted set of transcripts (paths may be relative to the sessions directory)."""
    if not body.paths:
        raise HTTPException(status_code=400, detail="No paths provided")

    sync_engine = _get_sync_engine(request)
    sessions_dir = Path(sync_engine.sessions_dir)
    changed_files: list[tuple[str, Path]] = []
    for item in body.paths:
        resolved = _resolve_changed_path(item.path, sessions_dir)
        changed_files.append((item.changeType, resolved))

    if body.background:
        operation_id = await sync_engine.start_operation(
            "sync_changed_files",
            trigger=body.trigger,
            metadata={"changedCount": len(changed_files)},
        )
        background_tasks.add_task(
            sync_engine.sync_changed_files,
            changed_files,
            operation_id,
            body.trigger,
        )
        return {
            "status": "ok",
            "mode": "background",
            "message": "Changed-path sync triggered in background",
            "operationId": operation_id,
        }

    event = await sync_engine.sync_changed_files(changed_files, None, body.trigger)
    return {"status": "ok", "mode": "foreground", "invalidation": event.model_dump()}


@cache_router.post("/heal")
async def trigger_orphan_heal(request: Request):
    """Re-check orphaned continuations against the current session index."""
    sync_engine = _get_sync_engine(request)
    event = await sync_engine.heal_orphans(trigger="api")
    return {"status": "ok", "invalidation": event.model_dump()}


@cache_router.get("/chains/audit")
async def get_chain_audit(
    request: Request,
    max_depth: int = Query(config.MAX_CHAIN_DEPTH, ge=1, le=10000),
):
    """Report cycles, duplicate children, self references, orphans and over-deep chains."""
    sync_engine = _get_sync_engine(request)
    graph = await sync_engine.graph()
    payload = audit_edges(graph.edges, graph.sessions, max_depth=max_depth)
    payload["status"] = "ok"
    return payload
