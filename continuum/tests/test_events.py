import unittest

from continuum.models import ChainEvent, InvalidationEvent
from continuum.services.events import EventBus, progress_batches


class EventBusTests(unittest.TestCase):
    def test_publish_reaches_every_subscriber(self) -> None:
        bus = EventBus("test")
        first, second = [], []
        bus.subscribe(first.append)
        bus.subscribe(second.append)

        delivered = bus.publish(InvalidationEvent(rootIds=["a"]))

        self.assertEqual(delivered, 2)
        self.assertEqual(first[0].rootIds, ["a"])
        self.assertEqual(second[0].rootIds, ["a"])

    def test_kind_filter(self) -> None:
        bus = EventBus("test")
        received = []
        bus.subscribe(received.append, kinds=["complete"])

        bus.publish(ChainEvent(kind="progress", current=1, total=2))
        bus.publish(ChainEvent(kind="complete", rootId="a"))

        self.assertEqual([e.kind for e in received], ["complete"])

    def test_failing_listener_does_not_block_others(self) -> None:
        bus = EventBus("test")
        received = []

        def broken(_event) -> None:
            raise RuntimeError("listener bug")

        bus.subscribe(broken)
        bus.subscribe(received.append)

        with self.assertLogs("continuum.events", level="ERROR"):
            delivered = bus.publish(InvalidationEvent(isGlobal=True))

        self.assertEqual(delivered, 1)
        self.assertEqual(len(received), 1)

    def test_close_is_idempotent_and_stops_delivery(self) -> None:
        bus = EventBus("test")
        received = []
        subscription = bus.subscribe(received.append)

        subscription.close()
        subscription.close()
        bus.publish(InvalidationEvent(rootIds=["a"]))

        self.assertTrue(subscription.closed)
        self.assertEqual(received, [])
        self.assertEqual(bus.listener_count, 0)

    def test_subscription_releases_on_context_exit(self) -> None:
        bus = EventBus("test")

        with self.assertRaises(ValueError):
            with bus.subscribe(lambda _event: None):
                self.assertEqual(bus.listener_count, 1)
                raise ValueError("caller failed")

        self.assertEqual(bus.listener_count, 0)

    def test_bus_close_releases_all(self) -> None:
        bus = EventBus("test")
        handles = [bus.subscribe(lambda _event: None) for _ in range(3)]

        bus.close()

        self.assertEqual(bus.listener_count, 0)
        self.assertTrue(all(handle.closed for handle in handles))


class AsyncListenerTests(unittest.IsolatedAsyncioTestCase):
    async def test_async_listener_is_scheduled_and_drained(self) -> None:
        bus = EventBus("test")
        received = []

        async def listener(event) -> None:
            received.append(event.reason)

        bus.subscribe(listener)
        bus.publish(InvalidationEvent(rootIds=["a"], reason="sync"))
        await bus.drain()

        self.assertEqual(received, ["sync"])


class ProgressBatchesTests(unittest.TestCase):
    def test_batches_cover_all_items(self) -> None:
        self.assertEqual(
            list(progress_batches(5, 2)),
            [(1, 3, 0, 2), (2, 3, 2, 4), (3, 3, 4, 5)],
        )

    def test_empty_and_degenerate_sizes(self) -> None:
        self.assertEqual(list(progress_batches(0, 10)), [])
        self.assertEqual(len(list(progress_batches(3, 0))), 3)


if __name__ == "__main__":
    unittest.main()
