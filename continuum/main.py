"""Continuum FastAPI backend: main application entry point."""
from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from continuum import config
from continuum.db import connection, migrations
from continuum.db.file_watcher import TranscriptWatcher
from continuum.db.sync_engine import SyncEngine
from continuum.observability import initialize as initialize_observability, shutdown as shutdown_observability
from continuum.routers.cache import cache_router
from continuum.routers.continuations import continuations_router, continuations_ws_router
from continuum.services.chain_cache import ContinuationCache
from continuum.services.events import EventBus

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("continuum")


async def _run_startup_sync(sync: SyncEngine) -> None:
    delay = max(0, int(config.STARTUP_SYNC_DELAY_SECONDS))
    if delay > 0:
        await asyncio.sleep(delay)
    await sync.sync_all(trigger="startup")


async def _run_orphan_healing(sync: SyncEngine) -> None:
    interval = max(1, int(config.ORPHAN_HEAL_INTERVAL_SECONDS))
    while True:
        await asyncio.sleep(interval)
        try:
            await sync.heal_orphans(trigger="schedule")
        except Exception:
            logger.exception("Periodic orphan check failed")


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Background task failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Continuum backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Engine wiring: one event bus per stream, one cache per process
    events = EventBus("chain-events")
    invalidations = EventBus("invalidations")
    sync = SyncEngine(db, events=events, invalidations=invalidations)
    await sync.store.load()
    chain_cache = ContinuationCache(sync.graph, events=events)
    sync.cache = chain_cache
    watcher = TranscriptWatcher(sync)

    app.state.events = events
    app.state.invalidations = invalidations
    app.state.sync_engine = sync
    app.state.chain_cache = chain_cache
    app.state.watcher = watcher

    with contextlib.ExitStack() as subscriptions:
        subscriptions.enter_context(watcher.subscribe(chain_cache.handle_invalidation))

        # 4. Initial scan + periodic orphan healing (background)
        logger.info("Starting initial transcript scan of %s", sync.sessions_dir)
        app.state.sync_task = asyncio.create_task(_run_startup_sync(sync))
        app.state.heal_task = asyncio.create_task(_run_orphan_healing(sync))

        # 5. Start transcript watcher
        if config.WATCH_ENABLED:
            await watcher.start()

        yield

        logger.info("Continuum backend shutting down")
        await _cancel(getattr(app.state, "sync_task", None))
        await _cancel(getattr(app.state, "heal_task", None))
        await watcher.stop()

    await events.drain()
    events.close()
    invalidations.close()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="Continuum API",
    description="Continuation chain resolution for AI coding assistant transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: allow the frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(continuations_router)
app.include_router(continuations_ws_router)
app.include_router(cache_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    watcher = getattr(app.state, "watcher", None)
    return {
        "status": "ok",
        "db": "connected" if connection._connection else "disconnected",
        "watcher": "running" if watcher is not None and watcher.is_running else "stopped",
    }


def run() -> None:
    uvicorn.run("continuum.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
