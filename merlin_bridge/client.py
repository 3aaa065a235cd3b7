# =============================================================================
# MERLIN Bridge -- Bridge Client
# =============================================================================

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable

from ._logging import logger
from .config import BridgeConfig
from .connection import ConnectionManager, Connector
from .constants import FRAME_QUEUE_SIZE
from .dispatcher import EventDispatcher
from .errors import BridgeConfigError
from .metrics import FrameMetricsTracker
from .protocol import ProtocolCodec
from .types import (
    ConfigureStreamMessage,
    Connected,
    ConnectionState,
    Disconnected,
    FrameReceived,
    QualityPreset,
    StreamType,
    SubscribeMessage,
)


class BridgeClient:
    """Async client for the MERLIN AR bridge.

    Wires a :class:`ProtocolCodec`, :class:`FrameMetricsTracker`,
    :class:`EventDispatcher` and :class:`ConnectionManager` together from a
    single :class:`BridgeConfig`. Entering the context starts the
    background connection; leaving it shuts the connection down.

    Frames can be consumed with callbacks, by iterating the client, or
    both::

        async with BridgeClient(host="192.168.1.20") as client:

            @client.on_connected
            def hello(event):
                print("connected to", event.endpoint)

            async for event in client:
                print(event.frame.frame_id, f"{event.fps:.1f} fps")

    Args:
        config: Client settings. Keyword overrides are applied on top.
        connector: Socket factory, for tests and custom transports.
        clock: Monotonic time source used for frame arrival times.
        queue_size: Bound on frames buffered for iteration, 0 for no bound.
            When full, the oldest buffered frame is dropped, so clients
            that only use callbacks hold at most this many frames.
        on_state_change: Called with every new connection state.
        **overrides: Any :class:`BridgeConfig` field.
    """

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        connector: Connector | None = None,
        clock: Callable[[], float] = time.monotonic,
        queue_size: int = FRAME_QUEUE_SIZE,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
        **overrides: Any,
    ) -> None:
        if queue_size < 0:
            raise BridgeConfigError(f"queue_size must not be negative, got {queue_size}")
        config = config or BridgeConfig()
        if overrides:
            config = replace(config, **overrides)
        self.config = config

        self.codec = ProtocolCodec()
        self.tracker = FrameMetricsTracker()
        self.dispatcher = EventDispatcher()
        self.connection = ConnectionManager(
            config.capabilities,
            codec=self.codec,
            tracker=self.tracker,
            dispatcher=self.dispatcher,
            accept_version_mismatch=config.accept_version_mismatch,
            connector=connector,
            clock=clock,
            on_state_change=on_state_change,
        )

        self._frame_queue: asyncio.Queue[FrameReceived | None] = asyncio.Queue()
        self._queue_size = queue_size
        self._frames_dropped = 0
        self._connected = asyncio.Event()
        self._closed = False

        self.dispatcher.subscribe(Connected, self._on_connected)
        self.dispatcher.subscribe(Disconnected, self._on_disconnected)
        self.dispatcher.subscribe(FrameReceived, self._enqueue_frame)

    # -- Context manager ------------------------------------------------------

    async def __aenter__(self) -> BridgeClient:
        self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- Async iterator -------------------------------------------------------

    def __aiter__(self) -> BridgeClient:
        return self

    async def __anext__(self) -> FrameReceived:
        event = await self._frame_queue.get()
        if event is None:
            # Re-queue sentinel so other iterators also stop
            self._frame_queue.put_nowait(None)
            raise StopAsyncIteration
        return event

    # -- Start / Close --------------------------------------------------------

    def start(self) -> None:
        """Validate the config and begin connecting in the background.

        Raises:
            BridgeConfigError: If the configuration is invalid.
            BridgeError: If the client has already been closed.
        """
        self.config.validate()
        self.connection.start(self.config.endpoint, self.config.retry)

    async def close(self) -> None:
        """Shut down the connection and end frame iteration. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.connection.shutdown()
        await self.dispatcher.drain()
        self._push_sentinel()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until a connection is open. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # -- Subscriptions --------------------------------------------------------

    def on_frame(self, handler: Callable[[FrameReceived], Any]) -> Callable[[FrameReceived], Any]:
        """Decorator: call *handler* for every received frame."""
        self.dispatcher.subscribe(FrameReceived, handler)
        return handler

    def on_connected(self, handler: Callable[[Connected], Any]) -> Callable[[Connected], Any]:
        self.dispatcher.subscribe(Connected, handler)
        return handler

    def on_disconnected(
        self, handler: Callable[[Disconnected], Any]
    ) -> Callable[[Disconnected], Any]:
        self.dispatcher.subscribe(Disconnected, handler)
        return handler

    # -- Control messages -----------------------------------------------------

    async def configure_stream(
        self, target_fps: int, quality: QualityPreset | str = QualityPreset.MEDIUM
    ) -> bool:
        """Ask the server for a frame rate and quality preset."""
        return await self.connection.send(
            ConfigureStreamMessage(target_fps=target_fps, quality=QualityPreset(quality))
        )

    async def subscribe(self, *streams: StreamType | str) -> bool:
        """Select which server streams to receive."""
        return await self.connection.send(
            SubscribeMessage(tuple(StreamType(s) for s in streams))
        )

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self.connection.state

    @property
    def is_connected(self) -> bool:
        return self.connection.is_open

    @property
    def current_fps(self) -> float:
        return self.tracker.current_rate

    @property
    def session_id(self) -> str | None:
        return self.connection.stats.session_id

    def get_stats(self) -> dict[str, Any]:
        stats = self.connection.get_stats()
        stats["queued_frames"] = self._frame_queue.qsize()
        stats["frames_dropped"] = self._frames_dropped
        return stats

    # -- Internal -------------------------------------------------------------

    def _on_connected(self, event: Connected) -> None:
        self._connected.set()

    def _on_disconnected(self, event: Disconnected) -> None:
        self._connected.clear()

    def _enqueue_frame(self, event: FrameReceived) -> None:
        if self._closed:
            return
        if self._queue_size and self._frame_queue.qsize() >= self._queue_size:
            self._frame_queue.get_nowait()
            self._frames_dropped += 1
            logger.debug("Frame queue full, dropped oldest frame")
        self._frame_queue.put_nowait(event)

    def _push_sentinel(self) -> None:
        self._frame_queue.put_nowait(None)
