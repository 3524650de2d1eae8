"""Root-keyed cache of resolved continuation chains.

Each root has at most one resolution in flight. Reads never wait on a
resolution unless the caller asks to: ``get_or_resolve`` returns whatever is
cached (or a loading placeholder) and schedules work in the background.

Entries and the ``sessionId -> rootId`` index are replaced, never edited in
place, so readers always see a chain together with the index that matches it.
"""
from __future__ import annotations

import asyncio
import logging
import time
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

from continuum.errors import ChainNotFoundError, SessionIndexUnavailableError
from continuum.models import (
    CachedChain,
    ChainEvent,
    ChainStats,
    ContinuationGraph,
    InvalidationEvent,
    ResolvedChain,
)
from continuum.observability import record_cache_event, record_resolution, start_span
from continuum.services.chain_resolver import find_root, resolve_chain

logger = logging.getLogger("continuum.cache")

GraphProvider = Callable[[], Awaitable[ContinuationGraph]]

_HARD_FAILURES = (ChainNotFoundError, SessionIndexUnavailableError)


class ContinuationCache:
    def __init__(self, graph_provider: GraphProvider, events: Any | None = None):
        self._graph_provider = graph_provider
        self._events = events
        self._entries: dict[str, CachedChain] = {}
        self._members: dict[str, tuple[str, ...]] = {}
        self._root_index: Mapping[str, str] = MappingProxyType({})
        self._inflight: dict[str, asyncio.Task] = {}
        self._clock = 0
        self._invalidated_at: dict[str, int] = {}
        self._global_invalidated_at = 0
        self._hits = 0
        self._misses = 0
        self._invalidations = 0
        self._resolutions = 0
        self._failures = 0

    # ── Lookups ─────────────────────────────────────────────────────

    def root_of(self, session_id: str) -> str | None:
        return self._root_index.get(session_id)

    def peek(self, session_id: str) -> CachedChain | None:
        root_id = self._root_index.get(session_id)
        if root_id is not None:
            return self._entries.get(root_id)
        return self._entries.get(session_id)

    def get_or_resolve(self, session_id: str) -> CachedChain:
        """Return the cached chain for any member session without waiting.

        Must be called from a running event loop. A missing, stale or failed
        entry schedules one background resolution; concurrent callers share it.
        """
        root_id = self._root_index.get(session_id)
        key = root_id or session_id
        entry = self._entries.get(key)

        if entry is not None and entry.status == "ready":
            self._hits += 1
            record_cache_event("hit")
            return entry

        self._misses += 1
        record_cache_event("miss")
        self._ensure_task(key, session_id)
        entry = self._entries.get(key)
        if entry is None:
            entry = CachedChain(rootId=key, requestedId=session_id, status="loading", isLoading=True)
            self._entries[key] = entry
        return entry

    async def resolve(self, session_id: str) -> CachedChain:
        """Resolve (or join the in-flight resolution for) ``session_id``.

        Raises ``ChainNotFoundError`` for unknown sessions and
        ``SessionIndexUnavailableError`` when the index cannot be read; any
        other failure is reported on the returned entry.
        """
        root_id = self._root_index.get(session_id)
        key = root_id or session_id
        entry = self._entries.get(key)
        if entry is not None and entry.status == "ready" and key not in self._inflight:
            self._hits += 1
            record_cache_event("hit")
            return entry

        self._misses += 1
        record_cache_event("miss")
        task = self._ensure_task(key, session_id)
        result, exc = await asyncio.shield(task)
        if isinstance(exc, _HARD_FAILURES):
            raise exc
        return result

    # ── Resolution ──────────────────────────────────────────────────

    def _ensure_task(self, key: str, session_id: str) -> asyncio.Task:
        task = self._inflight.get(key)
        if task is not None and not task.done():
            return task
        entry = self._entries.get(key)
        if entry is not None:
            self._entries[key] = entry.model_copy(update={"isLoading": True, "requestedId": session_id})
        task = asyncio.get_running_loop().create_task(self._run(key, session_id))
        self._inflight[key] = task
        return task

    async def _run(self, key: str, session_id: str) -> tuple[CachedChain, BaseException | None]:
        started_clock = self._clock
        started = time.monotonic()
        claimed: list[str] = []
        try:
            with start_span("continuum.chain.resolve", {"session_id": session_id}):
                graph = await self._graph_provider()
                sessions = graph.sessions
                if session_id not in sessions and key in sessions:
                    session_id = key
                root_id = await asyncio.to_thread(find_root, session_id, graph.edges, sessions)

                other = self._inflight.get(root_id)
                if root_id != key and other is not None and not other.done():
                    # Another caller is already resolving this root.
                    result = await asyncio.shield(other)
                    self._drop_placeholder(key)
                    return result
                if root_id != key:
                    self._inflight[root_id] = asyncio.current_task()
                    claimed.append(root_id)

                chain = await asyncio.to_thread(resolve_chain, root_id, graph.edges, sessions)
        except Exception as exc:  # noqa: BLE001
            duration_ms = (time.monotonic() - started) * 1000
            record_resolution("error", duration_ms)
            return self._fail(key, session_id, exc), exc
        finally:
            for claimed_key in claimed:
                if self._inflight.get(claimed_key) is asyncio.current_task():
                    del self._inflight[claimed_key]
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

        duration_ms = (time.monotonic() - started) * 1000
        record_resolution("ok", duration_ms)
        entry = self._install(chain, key, session_id, started_clock, graph)
        logger.debug(
            "Resolved chain %s (%d sessions, gen %d) in %.1fms",
            chain.rootId,
            chain.stats.totalCount,
            entry.generation,
            duration_ms,
        )
        self._publish(
            ChainEvent(
                kind="complete",
                rootId=chain.rootId,
                current=chain.stats.totalCount,
                total=chain.stats.totalCount,
                stats=chain.stats.model_dump(),
            )
        )
        return entry, None

    def _drop_placeholder(self, key: str) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.chain is None and key not in self._members:
            del self._entries[key]

    def _prune_invalidations(self) -> None:
        self._invalidated_at = {
            root_id: clock
            for root_id, clock in self._invalidated_at.items()
            if root_id in self._entries or root_id in self._inflight
        }

    def _invalidated_since(self, root_id: str, clock: int) -> bool:
        if self._global_invalidated_at > clock:
            return True
        return self._invalidated_at.get(root_id, 0) > clock

    def _install(
        self,
        chain: ResolvedChain,
        key: str,
        requested_id: str,
        started_clock: int,
        graph: ContinuationGraph,
    ) -> CachedChain:
        root_id = chain.rootId
        member_set = set(chain.memberIds)
        stale = self._invalidated_since(root_id, started_clock) or self._invalidated_since(key, started_clock)

        index = dict(self._root_index)
        for sid in self._members.get(root_id, ()):
            if index.get(sid) == root_id:
                del index[sid]

        displaced: set[str] = set()
        for sid in chain.memberIds:
            previous = index.get(sid)
            if previous is not None and previous != root_id:
                displaced.add(previous)
            index[sid] = root_id

        for other in sorted(displaced):
            if other in member_set or other not in graph.sessions:
                # Absorbed by this chain (healing) or gone from the index.
                for sid in self._members.pop(other, ()):
                    if index.get(sid) == other:
                        del index[sid]
                self._entries.pop(other, None)
                logger.info("Chain %s absorbed into %s", other, root_id)
            else:
                self._clock += 1
                self._mark_stale(other)

        if key != root_id and key not in self._members:
            self._entries.pop(key, None)
            self._members.pop(key, None)

        previous_entry = self._entries.get(root_id)
        entry = CachedChain(
            rootId=root_id,
            requestedId=requested_id,
            status="stale" if stale else "ready",
            chain=chain,
            isLoading=False,
            isStale=stale,
            lastError=None,
            generation=(previous_entry.generation if previous_entry else 0) + 1,
            loadedAt=time.time(),
        )
        self._members[root_id] = tuple(chain.memberIds)
        self._entries[root_id] = entry
        self._root_index = MappingProxyType(index)
        self._prune_invalidations()
        self._resolutions += 1
        return entry

    def _fail(self, key: str, session_id: str, exc: BaseException) -> CachedChain:
        self._failures += 1
        message = str(exc) or exc.__class__.__name__
        previous = self._entries.get(key)

        not_found = isinstance(exc, ChainNotFoundError)
        if not_found:
            # Unknown ids leave nothing behind; a vanished root is evicted.
            index = dict(self._root_index)
            for sid in self._members.pop(key, ()):
                if index.get(sid) == key:
                    del index[sid]
            self._root_index = MappingProxyType(index)
            self._entries.pop(key, None)
            self._invalidated_at.pop(key, None)
            previous = None
            logger.info("Chain lookup for %s failed: %s", session_id, message)
        else:
            logger.error("Chain resolution for %s failed: %s", session_id, message)

        entry = CachedChain(
            rootId=key,
            requestedId=session_id,
            status="error",
            chain=previous.chain if previous else None,
            isLoading=False,
            isStale=bool(previous and previous.chain),
            lastError=message,
            generation=previous.generation if previous else 0,
            loadedAt=previous.loadedAt if previous else None,
        )
        if not not_found:
            self._entries[key] = entry
        self._publish(ChainEvent(kind="error", rootId=key, message=message))
        return entry

    def _publish(self, event: ChainEvent) -> None:
        if self._events is not None:
            self._events.publish(event)

    # ── Invalidation ────────────────────────────────────────────────

    def _mark_stale(self, root_id: str) -> bool:
        entry = self._entries.get(root_id)
        if entry is not None or root_id in self._inflight:
            self._invalidated_at[root_id] = self._clock
        if entry is None:
            return False
        if entry.status == "ready":
            self._entries[root_id] = entry.model_copy(update={"status": "stale", "isStale": True})
        elif entry.chain is not None and not entry.isStale:
            self._entries[root_id] = entry.model_copy(update={"isStale": True})
        return True

    def invalidate(self, root_or_session_id: str) -> bool:
        """Mark the chain containing ``root_or_session_id`` stale.

        The previous chain keeps being served, flagged stale, until a new
        resolution replaces it.
        """
        self._clock += 1
        self._invalidations += 1
        record_cache_event("invalidate")
        root_id = self._root_index.get(root_or_session_id, root_or_session_id)
        return self._mark_stale(root_id)

    def invalidate_all(self) -> int:
        self._clock += 1
        self._global_invalidated_at = self._clock
        self._invalidated_at = {}
        self._invalidations += 1
        record_cache_event("invalidate_all")
        count = 0
        for root_id in list(self._entries):
            if self._mark_stale(root_id):
                count += 1
        return count

    def handle_invalidation(self, event: InvalidationEvent) -> None:
        """Listener for change-notifier events."""
        if event.is_empty:
            return
        if event.isGlobal:
            count = self.invalidate_all()
            logger.info("Global invalidation (%s): %d chain(s) stale", event.reason or "change", count)
            return
        for root_id in event.rootIds:
            self.invalidate(root_id)
        logger.debug("Invalidated %d chain(s) (%s)", len(event.rootIds), event.reason or "change")

    def clear(self) -> None:
        """Drop every entry. In-flight resolutions still finish and install."""
        self._clock += 1
        self._global_invalidated_at = self._clock
        self._invalidated_at = {}
        self._entries = {}
        self._members = {}
        self._root_index = MappingProxyType({})
        record_cache_event("clear")
        logger.info("Continuation cache cleared")

    # ── Stats ───────────────────────────────────────────────────────

    def get_stats_for_root(self, root_id: str) -> ChainStats | None:
        entry = self.peek(root_id)
        if entry is None or entry.chain is None:
            return None
        return entry.chain.stats

    def cached_roots(self) -> list[str]:
        return sorted(root for root, entry in self._entries.items() if entry.chain is not None)

    def get_stats(self) -> dict[str, Any]:
        entries = list(self._entries.values())
        return {
            "groupCount": sum(1 for e in entries if e.hasContinuations),
            "rootCount": sum(1 for e in entries if e.chain is not None),
            "totalCached": len(self._root_index),
            "loading": len({id(task) for task in self._inflight.values() if not task.done()}),
            "stale": sum(1 for e in entries if e.isStale),
            "errors": sum(1 for e in entries if e.status == "error"),
            "hits": self._hits,
            "misses": self._misses,
            "invalidations": self._invalidations,
            "resolutions": self._resolutions,
            "failures": self._failures,
        }
