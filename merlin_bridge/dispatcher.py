# =============================================================================
# MERLIN Bridge -- Event Dispatcher
# =============================================================================
#
# Typed subscriber lists for Connected / Disconnected / FrameReceived.
# Delivery is synchronous and ordered; publishes issued from inside a
# handler are queued and delivered after the current event.
# =============================================================================

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any, Awaitable, Callable, TypeVar

from ._logging import logger
from .types import BridgeEvent, Connected, Disconnected, FrameReceived

E = TypeVar("E", Connected, Disconnected, FrameReceived)

Handler = Callable[[Any], Any]
AsyncHandler = Callable[[Any], Awaitable[Any]]

_EVENT_TYPES: tuple[type, ...] = (Connected, Disconnected, FrameReceived)


class EventDispatcher:
    """Fan out bridge notifications to subscribers.

    Handlers for an event kind run in subscription order. Subscribing or
    unsubscribing while an event is being delivered takes effect from the
    next publish. A handler that raises is logged and skipped; the others
    still receive the event. Coroutine handlers are scheduled on the
    running loop.

    Example::

        dispatcher = EventDispatcher()

        @dispatcher.on(FrameReceived)
        def render(event: FrameReceived) -> None:
            print(event.frame.frame_id, event.fps)
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler | AsyncHandler]] = {
            kind: [] for kind in _EVENT_TYPES
        }
        self._pending: deque[BridgeEvent] = deque()
        self._dispatching = False
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._published = 0
        self._handler_errors = 0

    # -- Registration -----------------------------------------------------------

    def subscribe(self, kind: type[E], handler: Callable[[E], Any]) -> None:
        self._handler_list(kind).append(handler)

    def unsubscribe(self, kind: type[E], handler: Callable[[E], Any]) -> None:
        handlers = self._handler_list(kind)
        if handler in handlers:
            handlers.remove(handler)

    def on(self, kind: type[E]) -> Callable[[Callable[[E], Any]], Callable[[E], Any]]:
        """Decorator form of :meth:`subscribe`."""

        def decorator(fn: Callable[[E], Any]) -> Callable[[E], Any]:
            self.subscribe(kind, fn)
            return fn

        return decorator

    def subscriber_count(self, kind: type | None = None) -> int:
        if kind is not None:
            return len(self._handler_list(kind))
        return sum(len(h) for h in self._handlers.values())

    # -- Publishing -------------------------------------------------------------

    def publish(self, event: BridgeEvent) -> None:
        """Deliver *event* to every subscriber of its kind."""
        self._handler_list(type(event))  # rejects unknown kinds
        self._pending.append(event)
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                self._deliver(self._pending.popleft())
        finally:
            self._dispatching = False

    def _deliver(self, event: BridgeEvent) -> None:
        self._published += 1
        # Snapshot so handlers may (un)subscribe during delivery
        for handler in tuple(self._handlers[type(event)]):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    self._fire_task(result)
            except Exception as exc:
                self._handler_errors += 1
                logger.error(
                    "Handler error for %s: %s", type(event).__name__, exc, exc_info=True
                )

    def _fire_task(self, coro: Any) -> None:
        """Schedule a coroutine with a strong reference to prevent GC.

        Outside a running loop the coroutine is closed and RuntimeError
        raised, so it never lingers un-awaited.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            raise RuntimeError(
                "coroutine handlers need a running event loop"
            ) from None
        task = loop.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _handler_list(self, kind: type) -> list[Handler | AsyncHandler]:
        try:
            return self._handlers[kind]
        except KeyError:
            raise TypeError(f"Unsupported event type: {kind.__name__}") from None

    # -- Lifecycle --------------------------------------------------------------

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    def cancel_pending(self) -> None:
        for task in self._background_tasks:
            task.cancel()
        self._background_tasks.clear()

    def get_stats(self) -> dict:
        return {
            "published": self._published,
            "handler_errors": self._handler_errors,
            "subscribers": {
                kind.__name__: len(handlers)
                for kind, handlers in self._handlers.items()
            },
        }
