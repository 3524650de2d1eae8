"""Transcript watcher using watchfiles.

Monitors the sessions directory and turns file changes into incremental
rescans. Each rescan publishes an ``InvalidationEvent`` naming the affected
chain roots; ``subscribe`` exposes that stream.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from watchfiles import Change, awatch

from continuum import config
from continuum.models import InvalidationEvent
from continuum.parsers.transcripts import is_session_file
from continuum.services.events import EventBus, Subscription

logger = logging.getLogger("continuum.watcher")


def _file_signature(path: Path) -> tuple[float, int] | None:
    try:
        stat = path.stat()
    except OSError:
        return None
    return stat.st_mtime, stat.st_size


class TranscriptWatcher:
    """Background watcher that rescans transcripts on change.

    Changed files are held back until their size and mtime stop moving for
    ``stabilize_ms``; files still being written are retried with the next batch.
    """

    def __init__(
        self,
        sync_engine: Any,
        sessions_dir: Path | None = None,
        debounce_ms: int | None = None,
        stabilize_ms: int | None = None,
    ):
        self.sync_engine = sync_engine
        self.sessions_dir = Path(sessions_dir or config.SESSIONS_DIR)
        bus = getattr(sync_engine, "invalidations", None)
        if bus is None:
            raise ValueError("Sync engine has no invalidation bus to publish on")
        self.bus: EventBus = bus
        self.debounce_ms = config.WATCH_DEBOUNCE_MS if debounce_ms is None else debounce_ms
        self.stabilize_ms = config.WATCH_STABILIZE_MS if stabilize_ms is None else stabilize_ms
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._deferred: dict[Path, str] = {}
        self._subscriptions: list[Subscription] = []

    def subscribe(self, listener: Callable[[InvalidationEvent], Any]) -> Subscription:
        """Register for invalidation events; released automatically on ``stop``."""
        subscription = self.bus.subscribe(listener)
        self._subscriptions.append(subscription)
        return subscription

    async def start(self) -> None:
        """Start watching the sessions directory in a background task."""
        if self._running:
            logger.warning("Transcript watcher already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop())
        logger.info("Transcript watcher started for %s", self.sessions_dir)

    async def stop(self) -> None:
        """Stop watching and release every subscription handed out."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions = []
        self._deferred = {}
        logger.info("Transcript watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _watch_loop(self) -> None:
        if not self.sessions_dir.exists():
            logger.warning("Sessions directory %s does not exist, watcher has nothing to monitor", self.sessions_dir)
            self._running = False
            return

        try:
            async for changes in awatch(
                self.sessions_dir,
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
            ):
                if not self._running:
                    break
                try:
                    await self.process_changes(changes)
                except Exception:
                    logger.exception("Error syncing changed transcripts")
        except asyncio.CancelledError:
            logger.info("Transcript watcher task cancelled")
        except Exception as e:
            logger.error("Transcript watcher error: %s", e)
        finally:
            self._running = False

    async def process_changes(self, changes: Iterable[tuple[Change, str]]) -> InvalidationEvent | None:
        """Classify, stabilize and sync one batch of raw watchfiles changes."""
        classified = self._classify_changes(changes)
        if not classified:
            return None

        ready, unsettled = await self._stabilize(classified)
        for change_type, path in unsettled:
            self._deferred[path] = change_type
        if unsettled:
            logger.debug("Deferring %d transcript(s) still being written", len(unsettled))
        if not ready:
            return None

        logger.info("Detected %d transcript change(s), rescanning...", len(ready))
        return await self.sync_engine.sync_changed_files(ready, trigger="watcher")

    def _classify_changes(self, changes: Iterable[tuple[Change, str]]) -> list[tuple[str, Path]]:
        """Classify raw watchfiles changes into (change_type, path) pairs.

        Only session transcripts are returned; the last change per path wins and
        any deferred paths from the previous batch are folded in.
        """
        pending: dict[Path, str] = dict(self._deferred)
        self._deferred = {}
        for change_type, path_str in changes:
            path = Path(path_str)
            if not is_session_file(path):
                continue
            if change_type == Change.deleted:
                pending[path] = "deleted"
            elif change_type == Change.added:
                pending[path] = "added"
            elif change_type == Change.modified:
                pending[path] = "added" if pending.get(path) == "added" else "modified"
        return [(kind, path) for path, kind in sorted(pending.items(), key=lambda item: str(item[0]))]

    async def _stabilize(
        self,
        classified: list[tuple[str, Path]],
    ) -> tuple[list[tuple[str, Path]], list[tuple[str, Path]]]:
        before = {path: _file_signature(path) for kind, path in classified if kind != "deleted"}
        if before and self.stabilize_ms > 0:
            await asyncio.sleep(self.stabilize_ms / 1000)

        ready: list[tuple[str, Path]] = []
        unsettled: list[tuple[str, Path]] = []
        for kind, path in classified:
            if kind == "deleted":
                ready.append((kind, path))
                continue
            after = _file_signature(path)
            if after is None:
                ready.append(("deleted", path))
            elif after != before.get(path):
                unsettled.append((kind, path))
            else:
                ready.append((kind, path))
        return ready, unsettled
