import asyncio
import unittest

from continuum.errors import ChainNotFoundError, SessionIndexUnavailableError
from continuum.models import ContinuationEdge, ContinuationGraph, InvalidationEvent, SessionRecord
from continuum.services.chain_cache import ContinuationCache
from continuum.services.events import EventBus


def _graph(edges: list[tuple[str, str]], extra: tuple[str, ...] = ()) -> ContinuationGraph:
    ids = set(extra)
    for child, parent in edges:
        ids.add(child)
    sessions = {sid: SessionRecord(sessionId=sid) for sid in ids}
    return ContinuationGraph(
        [ContinuationEdge(childId=c, parentId=p, isOrphaned=p not in sessions) for c, p in edges],
        sessions,
    )


class _Provider:
    def __init__(self, graph: ContinuationGraph):
        self.graph = graph
        self.calls = 0
        self.error: Exception | None = None

    async def __call__(self) -> ContinuationGraph:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.graph


class ContinuationCacheTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.provider = _Provider(_graph([("b", "a"), ("c", "b")], extra=("a", "solo")))
        self.events = EventBus("test")
        self.received = []
        self.events.subscribe(self.received.append)
        self.cache = ContinuationCache(self.provider, events=self.events)

    async def test_first_read_is_loading_then_ready(self) -> None:
        first = self.cache.get_or_resolve("c")

        self.assertEqual(first.status, "loading")
        self.assertTrue(first.isLoading)
        self.assertIsNone(first.chain)

        entry = await self.cache.resolve("c")

        self.assertEqual(entry.status, "ready")
        self.assertEqual(entry.rootId, "a")
        self.assertEqual(entry.chain.stats.totalCount, 3)
        self.assertTrue(entry.hasContinuations)
        self.assertIs(self.cache.get_or_resolve("b"), entry)
        self.assertEqual([e.kind for e in self.received], ["complete"])

    async def test_concurrent_reads_share_one_resolution(self) -> None:
        results = await asyncio.gather(
            self.cache.resolve("a"),
            self.cache.resolve("b"),
            self.cache.resolve("c"),
        )

        self.assertEqual({entry.rootId for entry in results}, {"a"})
        self.assertEqual(self.cache.get_stats()["resolutions"], 1)

    async def test_repeated_get_or_resolve_schedules_once(self) -> None:
        self.cache.get_or_resolve("a")
        self.cache.get_or_resolve("a")
        await self.cache.resolve("a")

        self.assertEqual(self.provider.calls, 1)

    async def test_reverse_index_maps_members_to_root(self) -> None:
        await self.cache.resolve("b")

        self.assertEqual(self.cache.root_of("a"), "a")
        self.assertEqual(self.cache.root_of("c"), "a")
        self.assertIsNone(self.cache.root_of("solo"))
        self.assertEqual(self.cache.get_stats_for_root("a").totalCount, 3)
        self.assertEqual(self.cache.cached_roots(), ["a"])

    async def test_invalidation_during_flight_installs_stale(self) -> None:
        gate = asyncio.Event()
        entered = asyncio.Event()
        graph = self.provider.graph

        async def slow_provider() -> ContinuationGraph:
            entered.set()
            await gate.wait()
            return graph

        cache = ContinuationCache(slow_provider)
        task = asyncio.create_task(cache.resolve("a"))
        await entered.wait()
        cache.invalidate("a")
        gate.set()
        entry = await task

        self.assertEqual(entry.status, "stale")
        self.assertTrue(entry.isStale)
        self.assertIsNotNone(entry.chain)

        refreshed = await cache.resolve("a")
        self.assertEqual(refreshed.status, "ready")
        self.assertEqual(refreshed.generation, entry.generation + 1)

    async def test_invalidate_keeps_serving_previous_chain(self) -> None:
        ready = await self.cache.resolve("a")

        self.assertTrue(self.cache.invalidate("c"))
        stale = self.cache.get_or_resolve("a")

        self.assertEqual(stale.status, "stale")
        self.assertIs(stale.chain, ready.chain)
        refreshed = await self.cache.resolve("a")
        self.assertEqual(refreshed.status, "ready")

    async def test_failure_is_reported_and_retried(self) -> None:
        self.provider.error = RuntimeError("disk hiccup")

        failed = await self.cache.resolve("a")

        self.assertEqual(failed.status, "error")
        self.assertEqual(failed.lastError, "disk hiccup")
        self.assertEqual(self.received[-1].kind, "error")

        self.provider.error = None
        recovered = await self.cache.resolve("a")
        self.assertEqual(recovered.status, "ready")

    async def test_failure_after_success_keeps_last_good_chain(self) -> None:
        ready = await self.cache.resolve("a")
        self.cache.invalidate_all()
        self.provider.error = RuntimeError("boom")

        failed = await self.cache.resolve("b")

        self.assertEqual(failed.status, "error")
        self.assertIs(failed.chain, ready.chain)
        self.assertEqual(self.cache.get_stats()["errors"], 1)

    async def test_hard_failures_raise(self) -> None:
        with self.assertRaises(ChainNotFoundError):
            await self.cache.resolve("missing")

        self.provider.error = SessionIndexUnavailableError("index gone")
        with self.assertRaises(SessionIndexUnavailableError):
            await self.cache.resolve("solo")

    async def test_healing_absorbs_orphan_root(self) -> None:
        self.provider.graph = _graph([("b", "a"), ("c", "x")], extra=("a",))
        orphan = await self.cache.resolve("c")
        self.assertEqual(orphan.rootId, "c")
        self.assertTrue(orphan.chain.root.isOrphaned)
        await self.cache.resolve("a")

        self.provider.graph = _graph([("b", "a"), ("x", "b"), ("c", "x")], extra=("a",))
        self.cache.handle_invalidation(InvalidationEvent(rootIds=["a", "c"], reason="heal"))
        healed = await self.cache.resolve("a")

        self.assertEqual(healed.chain.memberIds, ["a", "b", "x", "c"])
        self.assertEqual(self.cache.root_of("c"), "a")
        self.assertEqual(self.cache.cached_roots(), ["a"])
        self.assertIs(self.cache.get_or_resolve("c"), healed)

    async def test_global_invalidation_and_clear(self) -> None:
        await self.cache.resolve("a")
        await self.cache.resolve("solo")

        self.cache.handle_invalidation(InvalidationEvent(isGlobal=True))

        self.assertEqual(self.cache.get_stats()["stale"], 2)
        self.cache.handle_invalidation(InvalidationEvent())
        self.assertEqual(self.cache.get_stats()["invalidations"], 1)

        self.cache.clear()
        self.assertEqual(self.cache.cached_roots(), [])
        self.assertIsNone(self.cache.root_of("b"))

    async def test_member_reads_joining_one_resolution_leave_no_placeholders(self) -> None:
        self.cache.get_or_resolve("b")
        self.cache.get_or_resolve("c")
        await asyncio.gather(*list(self.cache._inflight.values()))

        self.assertEqual(set(self.cache._entries), {"a"})
        self.assertEqual(self.cache.peek("c").status, "ready")
        self.assertEqual(self.cache.get_stats()["loading"], 0)

    async def test_unknown_sessions_are_not_cached(self) -> None:
        for i in range(5):
            with self.assertRaises(ChainNotFoundError):
                await self.cache.resolve(f"bogus-{i}")
        self.cache.get_or_resolve("bogus-late")
        await asyncio.gather(*list(self.cache._inflight.values()))

        stats = self.cache.get_stats()
        self.assertEqual(self.cache._entries, {})
        self.assertEqual(stats["errors"], 0)
        self.assertEqual(stats["failures"], 6)
        self.assertEqual(self.cache.invalidate_all(), 0)

    async def test_vanished_root_is_evicted(self) -> None:
        await self.cache.resolve("solo")
        self.provider.graph = _graph([("b", "a"), ("c", "b")], extra=("a",))
        self.cache.invalidate("solo")

        with self.assertRaises(ChainNotFoundError):
            await self.cache.resolve("solo")

        self.assertIsNone(self.cache.peek("solo"))
        self.assertIsNone(self.cache.root_of("solo"))

    async def test_invalidating_unknown_ids_keeps_no_bookkeeping(self) -> None:
        await self.cache.resolve("a")

        for i in range(10):
            self.assertFalse(self.cache.invalidate(f"never-seen-{i}"))
        self.cache.invalidate("b")

        self.assertEqual(set(self.cache._invalidated_at), {"a"})
        self.cache.invalidate_all()
        self.assertEqual(self.cache._invalidated_at, {})

    async def test_recompute_does_not_disturb_sibling_root_index(self) -> None:
        self.provider.graph = _graph([("b", "a"), ("c", "b"), ("t", "s")], extra=("a", "s"))
        await self.cache.resolve("a")
        sibling = await self.cache.resolve("t")
        before = {sid: self.cache.root_of(sid) for sid in ("s", "t")}

        gate = asyncio.Event()
        entered = asyncio.Event()
        graph = self.provider.graph

        async def slow_provider() -> ContinuationGraph:
            entered.set()
            await gate.wait()
            return graph

        self.cache._graph_provider = slow_provider
        self.cache.invalidate("a")
        task = asyncio.create_task(self.cache.resolve("c"))
        await entered.wait()

        during = {sid: self.cache.root_of(sid) for sid in ("s", "t")}
        self.assertEqual(during, {"s": "s", "t": "s"})
        self.assertIs(self.cache.get_or_resolve("t"), sibling)
        self.assertEqual(self.cache.get_or_resolve("b").status, "stale")

        gate.set()
        refreshed = await task

        self.assertEqual(refreshed.status, "ready")
        self.assertEqual(before, during)
        self.assertEqual({sid: self.cache.root_of(sid) for sid in ("s", "t")}, before)
        self.assertEqual(self.cache.root_of("c"), "a")
        self.assertIs(self.cache.peek("s"), sibling)

    async def test_reresolve_after_noop_invalidation_is_equal(self) -> None:
        first = await self.cache.resolve("b")

        self.cache.invalidate("a")
        second = await self.cache.resolve("b")

        self.assertIsNot(second.chain, first.chain)
        self.assertEqual(second.chain, first.chain)
        self.assertEqual(second.chain.model_dump(), first.chain.model_dump())
        self.assertEqual(second.generation, first.generation + 1)
        self.assertEqual(self.cache.root_of("c"), "a")


if __name__ == "__main__":
    unittest.main()
