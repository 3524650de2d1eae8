"""In-process publish/subscribe with scoped subscription handles."""
from __future__ import annotations

import asyncio
import inspect
import logging
import math
from typing import Any, Callable, Iterable, Iterator

logger = logging.getLogger("continuum.events")

Listener = Callable[[Any], Any]


class Subscription:
    """Handle returned by ``subscribe``; releasing it twice is a no-op.

    Usable as a context manager so release happens on every exit path.
    """

    def __init__(self, release: Callable[["Subscription"], None]):
        self._release: Callable[[Subscription], None] | None = release

    @property
    def closed(self) -> bool:
        return self._release is None

    def close(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """Fan events out to listeners.

    A listener that raises is logged and skipped; the remaining listeners still
    receive the event. Listeners returning an awaitable are scheduled on the
    running loop.
    """

    def __init__(self, name: str = "events"):
        self.name = name
        self._listeners: dict[Subscription, tuple[Listener, frozenset[str] | None]] = {}
        self._pending: set[asyncio.Future] = set()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener, kinds: Iterable[str] | None = None) -> Subscription:
        subscription = Subscription(self._remove)
        self._listeners[subscription] = (listener, frozenset(kinds) if kinds is not None else None)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._listeners.pop(subscription, None)

    def publish(self, event: Any) -> int:
        kind = getattr(event, "kind", None)
        delivered = 0
        for listener, kinds in list(self._listeners.values()):
            if kinds is not None and kind not in kinds:
                continue
            try:
                result = listener(event)
            except Exception:
                logger.exception("Listener on %s failed for %s event", self.name, kind or type(event).__name__)
                continue
            if inspect.isawaitable(result):
                self._schedule(result)
            delivered += 1
        return delivered

    def _schedule(self, awaitable: Any) -> None:
        future = asyncio.ensure_future(awaitable)
        self._pending.add(future)
        future.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Async listener on %s failed: %s", self.name, exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for scheduled async listeners to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        for subscription in list(self._listeners):
            subscription.close()


def progress_batches(total: int, batch_size: int) -> Iterator[tuple[int, int, int, int]]:
    """Yield ``(batch, total_batches, start, end)`` slices covering ``total`` items.

    ``batch`` is 1-based; ``end`` is exclusive.
    """
    size = max(1, int(batch_size))
    total_batches = math.ceil(total / size) if total > 0 else 0
    for index in range(total_batches):
        start = index * size
        yield index + 1, total_batches, start, min(total, start + size)
