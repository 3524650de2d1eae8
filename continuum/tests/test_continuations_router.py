import asyncio
import types
import unittest

from fastapi import HTTPException, WebSocketDisconnect

from continuum.errors import SessionIndexUnavailableError
from continuum.models import ChainEvent, ContinuationEdge, ContinuationGraph, InvalidationEvent, SessionRecord
from continuum.routers import continuations as continuations_router
from continuum.services.chain_cache import ContinuationCache
from continuum.services.events import EventBus


def _graph() -> ContinuationGraph:
    # a ─ b ─┬─ c
    #        └─ d      o (orphan, parent gone)
    sessions = {sid: SessionRecord(sessionId=sid) for sid in ("a", "b", "c", "d", "o")}
    edges = [
        ContinuationEdge(childId="b", parentId="a", order=0, isActiveContinuation=True),
        ContinuationEdge(childId="c", parentId="b", order=0),
        ContinuationEdge(childId="d", parentId="b", order=1, isActiveContinuation=True),
        ContinuationEdge(childId="o", parentId="gone", isOrphaned=True),
    ]
    return ContinuationGraph(edges, sessions)


class _FakeStore:
    def __init__(self, graph: ContinuationGraph) -> None:
        self.graph = graph
        self.error: Exception | None = None

    def counts(self):
        return {"totalRelationships": 4, "sessions": 5}

    async def children_of(self, parent_id: str):
        if self.error is not None:
            raise self.error
        return sorted((e for e in self.graph.edges if e.parentId == parent_id), key=lambda e: e.order)

    async def orphaned_edges(self):
        if self.error is not None:
            raise self.error
        return [e for e in self.graph.edges if e.isOrphaned]


class _FakeSyncEngine:
    def __init__(self, graph: ContinuationGraph) -> None:
        self._graph = graph
        self.store = _FakeStore(graph)
        self.heal_calls: list[str] = []

    async def graph(self):
        return self._graph

    async def heal_orphans(self, trigger="schedule"):
        self.heal_calls.append(trigger)
        return InvalidationEvent(rootIds=["a"], reason="heal")


class ContinuationsRouterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.engine = _FakeSyncEngine(_graph())
        self.cache = ContinuationCache(self.engine.graph)
        self.request = types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(sync_engine=self.engine, chain_cache=self.cache)
            )
        )

    async def test_chain_without_wait_starts_loading(self) -> None:
        payload = await continuations_router.get_chain(self.request, "c", wait=False)

        self.assertEqual(payload["status"], "loading")
        self.assertFalse(payload["hasContinuations"])

        ready = await continuations_router.get_chain(self.request, "c", wait=True)
        self.assertEqual(ready["status"], "ready")
        self.assertEqual(ready["rootId"], "a")
        self.assertTrue(ready["hasContinuations"])

    async def test_unknown_session_is_404(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.get_chain(self.request, "zz", wait=True)
        self.assertEqual(ctx.exception.status_code, 404)

        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.get_chain_stats(self.request, "zz")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_unreadable_index_is_503(self) -> None:
        async def broken_graph():
            raise SessionIndexUnavailableError("database locked")

        self.request.app.state.chain_cache = ContinuationCache(broken_graph)

        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.get_session_group(self.request, "a")

        self.assertEqual(ctx.exception.status_code, 503)

    async def test_missing_cache_is_503(self) -> None:
        self.request.app.state.chain_cache = None

        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.get_chain(self.request, "a", wait=False)

        self.assertEqual(ctx.exception.status_code, 503)

    async def test_stats_and_group(self) -> None:
        stats = await continuations_router.get_chain_stats(self.request, "d")
        group = await continuations_router.get_session_group(self.request, "d")

        self.assertEqual(stats.totalCount, 4)
        self.assertEqual(stats.branchCount, 1)
        self.assertEqual(group, {"rootId": "a", "sessionIds": ["a", "b", "c", "d"]})

    async def test_global_stats_and_orphans(self) -> None:
        stats = await continuations_router.get_continuation_stats(self.request)
        orphans = await continuations_router.list_orphans(self.request)

        self.assertEqual(stats["relationships"]["sessions"], 5)
        self.assertIn("hits", stats["cache"])
        self.assertEqual(orphans["count"], 1)
        self.assertEqual(orphans["items"][0]["childId"], "o")

    async def test_direct_children(self) -> None:
        children = await continuations_router.get_direct_children(self.request, "b")

        self.assertEqual([c["childId"] for c in children], ["c", "d"])
        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.get_direct_children(self.request, "zz")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_linear_path_with_breadcrumb(self) -> None:
        payload = await continuations_router.get_linear_path(self.request, "a", "c", maxVisible=5)

        self.assertEqual(payload["rootId"], "a")
        self.assertEqual(payload["path"].sessionIds, ["a", "b", "c"])
        self.assertEqual(payload["breadcrumb"].hiddenCount, 0)

        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.get_linear_path(self.request, "a", "o", maxVisible=5)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_highlight_endpoints(self) -> None:
        payload = await continuations_router.get_highlight_map(self.request, "c")
        role = await continuations_router.get_highlight_role(self.request, "c", "d")

        self.assertEqual(payload["items"]["a"].role, "ancestor")
        self.assertEqual(payload["items"]["c"].role, "clicked")
        self.assertEqual(role["role"], "sibling")

    async def test_view_and_descendants(self) -> None:
        view = await continuations_router.get_chain_view(self.request, "a")
        descendants = await continuations_router.get_descendants(self.request, "b")

        self.assertEqual(view.mode, "tree")
        self.assertEqual([d.sessionId for d in descendants], ["c", "d"])

    async def test_store_lookups_map_unreadable_store_to_503(self) -> None:
        self.engine.store.error = SessionIndexUnavailableError("database locked")

        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.list_orphans(self.request)
        self.assertEqual(ctx.exception.status_code, 503)

        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.get_direct_children(self.request, "b")
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_session_metadata(self) -> None:
        branch = await continuations_router.get_session_metadata(self.request, "b")
        leaf = await continuations_router.get_session_metadata(self.request, "d")

        self.assertEqual(branch.rootId, "a")
        self.assertTrue(branch.isChild)
        self.assertTrue(branch.isParent)
        self.assertEqual(branch.childCount, 2)
        self.assertEqual(leaf.depth, 2)
        self.assertEqual(leaf.position, 1)
        self.assertTrue(leaf.isActiveContinuation)
        self.assertFalse(leaf.isParent)

        orphan = await continuations_router.get_session_metadata(self.request, "o")
        self.assertTrue(orphan.isOrphaned)
        self.assertEqual(orphan.continuationOf, "gone")

        with self.assertRaises(HTTPException) as ctx:
            await continuations_router.get_session_metadata(self.request, "zz")
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_invalidate_and_heal(self) -> None:
        await continuations_router.get_chain(self.request, "a", wait=True)

        single = await continuations_router.invalidate_chains(
            self.request, continuations_router.InvalidateRequest(sessionIds=["c", "zz"])
        )
        everything = await continuations_router.invalidate_chains(
            self.request, continuations_router.InvalidateRequest(all=True)
        )
        healed = await continuations_router.heal_orphans(self.request)

        self.assertEqual(single["invalidated"], 1)
        self.assertEqual(everything["invalidated"], 1)
        self.assertEqual(healed["invalidation"]["rootIds"], ["a"])
        self.assertEqual(self.engine.heal_calls, ["api"])


class _FakeWebSocket:
    def __init__(self, app, events: EventBus, invalidations: EventBus) -> None:
        self.app = app
        self.events = events
        self.invalidations = invalidations
        self.accepted = False
        self.sent: list[dict] = []
        self._received = 0

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, message) -> None:
        self.sent.append(message)

    async def receive_text(self) -> str:
        if self._received:
            raise WebSocketDisconnect()
        self._received += 1
        self.events.publish(ChainEvent(kind="complete", rootId="a"))
        self.invalidations.publish(InvalidationEvent(rootIds=["a"], reason="watcher"))
        for _ in range(20):
            if len(self.sent) >= 2:
                break
            await asyncio.sleep(0)
        return "ping"


class ContinuationEventsSocketTests(unittest.IsolatedAsyncioTestCase):
    async def test_events_are_forwarded_until_disconnect(self) -> None:
        events = EventBus("chain-events")
        invalidations = EventBus("invalidations")
        app = types.SimpleNamespace(state=types.SimpleNamespace(events=events, invalidations=invalidations))
        websocket = _FakeWebSocket(app, events, invalidations)

        await continuations_router.continuation_events(websocket)

        self.assertTrue(websocket.accepted)
        self.assertEqual([m["type"] for m in websocket.sent], ["chain", "invalidation"])
        self.assertEqual(websocket.sent[1]["data"]["rootIds"], ["a"])
        self.assertEqual(events.listener_count, 0)
        self.assertEqual(invalidations.listener_count, 0)


if __name__ == "__main__":
    unittest.main()
