# =============================================================================
# MERLIN Bridge -- Connection Manager
# =============================================================================
#
# WebSocket lifecycle: connect, handshake, receive, retry, shutdown.
# A single asyncio task owns the socket and the state machine.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Any, Callable

import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, ConnectionClosedError

from ._logging import logger
from .config import validate_endpoint, validate_retry
from .constants import CLOSE_TIMEOUT, MAX_MESSAGE_SIZE, UINT32_MAX
from .dispatcher import EventDispatcher
from .errors import (
    BridgeConfigError,
    BridgeConnectionError,
    BridgeError,
    BridgeTimeoutError,
)
from .metrics import FrameMetricsTracker
from .protocol import ProtocolCodec
from .types import (
    ClientCapabilities,
    ClientMessage,
    ConnectedAck,
    ConnectionState,
    ConnectionStats,
    ConnectMessage,
    Connected,
    DecodeError,
    DecodeErrorReason,
    Disconnected,
    Endpoint,
    Frame,
    FrameReceived,
    RetryConfig,
)

# Returns an async context manager that yields an open websocket.
Connector = Callable[[str], Any]


def default_connector(url: str) -> Any:
    """Open *url* with the ``websockets`` asyncio client.

    The open timeout is left to :class:`ConnectionManager`, which bounds
    the whole attempt with ``asyncio.wait_for``.
    """
    return websockets.asyncio.client.connect(
        url,
        max_size=MAX_MESSAGE_SIZE,
        open_timeout=None,
        close_timeout=CLOSE_TIMEOUT,
    )


class ConnectionManager:
    """Keeps one live connection to the bridge server.

    State machine::

        IDLE -> CONNECTING -> OPEN -> CLOSING -> IDLE -> ...
                    (any) -> SHUTDOWN

    Only one attempt is ever in flight. A failed or timed-out attempt goes
    back to IDLE and waits ``retry.delay`` before the next one; with
    auto-retry disabled the manager stops there and stays IDLE. An
    established session that ends takes the same path, so a server that
    accepts and immediately closes is retried at most once per delay.

    On every transition into OPEN the frame tracker is reset and the
    client capabilities are sent once. Inbound messages are decoded in
    arrival order; frames go to the tracker and the dispatcher, malformed
    messages are logged and dropped without closing the connection.

    Args:
        capabilities: Announced in the handshake.
        codec: Wire codec; a fresh one by default.
        tracker: Frame rate tracker; a fresh one by default.
        dispatcher: Notification fan-out; a fresh one by default.
        accept_version_mismatch: Deliver frames whose protocol version
            differs from the negotiated one instead of dropping them.
        connector: Socket factory, see :func:`default_connector`.
        clock: Monotonic time source for frame arrival times.
        on_state_change: Called with every new :class:`ConnectionState`.
    """

    def __init__(
        self,
        capabilities: ClientCapabilities,
        *,
        codec: ProtocolCodec | None = None,
        tracker: FrameMetricsTracker | None = None,
        dispatcher: EventDispatcher | None = None,
        accept_version_mismatch: bool = True,
        connector: Connector | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Callable[[ConnectionState], Any] | None = None,
    ) -> None:
        self._capabilities = capabilities
        self.codec = codec or ProtocolCodec()
        self.tracker = tracker or FrameMetricsTracker()
        self.dispatcher = dispatcher or EventDispatcher()
        self._accept_version_mismatch = accept_version_mismatch
        self._connector = connector or default_connector
        self._clock = clock
        self._on_state_change = on_state_change

        # State
        self._state = ConnectionState.IDLE
        self._endpoint: Endpoint | None = None
        self._retry = RetryConfig()
        self._ws_cm: Any | None = None  # websocket context manager
        self._ws: Any | None = None
        self._task: asyncio.Task[None] | None = None
        self._shutdown_requested = False
        self._shutdown_event = asyncio.Event()
        self._announced = False  # Connected published for the current session
        self._mismatch_logged = False
        self._attempt = 0

        self.stats = ConnectionStats()

    # -- Properties -----------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def endpoint(self) -> Endpoint | None:
        return self._endpoint

    @property
    def retry(self) -> RetryConfig:
        return self._retry

    @property
    def capabilities(self) -> ClientCapabilities:
        return self._capabilities

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._state == ConnectionState.OPEN

    @property
    def is_running(self) -> bool:
        """Whether the retry loop is still making progress."""
        return self._task is not None and not self._task.done()

    @property
    def current_fps(self) -> float:
        return self.tracker.current_rate

    # -- Start / Shutdown -----------------------------------------------------

    def start(
        self, endpoint: Endpoint | None = None, retry: RetryConfig | None = None
    ) -> None:
        """Validate *endpoint* and begin connecting in the background.

        Without arguments the previous endpoint and retry config are reused.

        Must be called from a running event loop. Returns immediately;
        progress is reported through the dispatcher.

        Raises:
            BridgeConfigError: If the endpoint or retry config is invalid.
                The manager stays IDLE.
            BridgeError: If the manager has been shut down.
        """
        if self._shutdown_requested:
            raise BridgeError("ConnectionManager has been shut down")
        if self.is_running:
            logger.debug("start() ignored, already running against %s", self._endpoint)
            return

        endpoint = endpoint or self._endpoint
        if endpoint is None:
            raise BridgeConfigError("No endpoint configured")
        validate_endpoint(endpoint)
        if retry is not None:
            validate_retry(retry)
        loop = asyncio.get_running_loop()

        self._endpoint = endpoint
        if retry is not None:
            self._retry = retry
        self._set_state(ConnectionState.CONNECTING)
        self._task = loop.create_task(self._run(endpoint), name="merlin-bridge-connection")

    async def shutdown(self) -> None:
        """Stop for good: no further attempts, close the socket. Idempotent."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        self._retry = replace(self._retry, auto_retry=False)
        self._shutdown_event.set()
        self._set_state(ConnectionState.SHUTDOWN)

        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self._close_socket()
        self._announce_disconnect("shutdown")
        logger.info("Bridge connection shut down")

    async def wait_stopped(self) -> None:
        """Wait until the retry loop gives up or is shut down."""
        task = self._task
        if task is not None:
            await asyncio.wait({task})

    # -- Send -----------------------------------------------------------------

    async def send(self, message: ClientMessage) -> bool:
        """Send a control message. Returns False when not open or on failure."""
        ws = self._ws
        if ws is None or self._state != ConnectionState.OPEN:
            return False
        try:
            await ws.send(self.codec.encode(message).decode("utf-8"))
        except ConnectionClosed:
            logger.debug("Send failed: connection closed")
            return False
        self.stats.messages_sent += 1
        return True

    # -- Internal: retry loop -------------------------------------------------

    async def _run(self, endpoint: Endpoint) -> None:
        while not self._shutdown_requested:
            self._set_state(ConnectionState.CONNECTING)
            self._attempt += 1
            self.stats.connect_attempts += 1

            try:
                ws = await self._open_socket(endpoint.url)
            except BridgeTimeoutError as exc:
                self.stats.connect_failures += 1
                self.stats.connect_timeouts += 1
                logger.warning(
                    "Connection to %s timed out after %.1fs (attempt %d)",
                    endpoint,
                    exc.timeout,
                    self._attempt,
                )
            except BridgeConnectionError as exc:
                self.stats.connect_failures += 1
                logger.warning(
                    "Failed to connect to %s: %s (attempt %d)",
                    endpoint,
                    exc,
                    self._attempt,
                )
            else:
                await self._run_session(endpoint, ws)

            # Ended sessions and failed attempts share the same backoff
            self._set_state(ConnectionState.IDLE)
            if self._shutdown_requested:
                return
            if not self._retry.auto_retry:
                logger.warning("Auto-retry disabled, staying idle for %s", endpoint)
                return

            logger.info("Retrying in %.1fs", self._retry.delay)
            await self._wait_retry_delay(self._retry.delay)

    async def _wait_retry_delay(self, delay: float) -> None:
        """Sleep for *delay*, waking early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _open_socket(self, url: str) -> Any:
        """Open the websocket, bounded by the connect timeout."""
        timeout = self._retry.connect_timeout
        try:
            self._ws_cm = self._connector(url)
            return await asyncio.wait_for(self._ws_cm.__aenter__(), timeout=timeout)
        except asyncio.TimeoutError:
            self._ws_cm = None
            raise BridgeTimeoutError(timeout) from None
        except asyncio.CancelledError:
            self._ws_cm = None
            raise
        except Exception as exc:
            self._ws_cm = None
            raise BridgeConnectionError(f"{type(exc).__name__}: {exc}") from exc

    # -- Internal: session ----------------------------------------------------

    async def _run_session(self, endpoint: Endpoint, ws: Any) -> None:
        self._ws = ws
        self._set_state(ConnectionState.OPEN)
        self.tracker.reset()
        self.stats.last_frame_id = None
        self.stats.connected_since = self._clock()
        self._mismatch_logged = False
        logger.info("Connected to %s", endpoint)

        reason = "closed by server"
        try:
            await self._send_handshake(ws)
            self._announced = True
            self.dispatcher.publish(Connected(endpoint=endpoint, attempt=self._attempt))

            async for message in ws:
                self._handle_message(message)
            logger.info("Connection to %s closed by server", endpoint)
        except ConnectionClosedError as exc:
            reason = f"connection lost: {exc}"
            logger.warning("Connection to %s lost: %s", endpoint, exc)
        except ConnectionClosed as exc:
            logger.info("Connection to %s closed: %s", endpoint, exc)
        except Exception as exc:
            reason = f"receive error: {exc}"
            logger.warning("Receive loop error on %s: %s", endpoint, exc)
        finally:
            if not self._shutdown_requested:
                self._set_state(ConnectionState.CLOSING)
            await self._close_socket()

        if self._shutdown_requested:
            return
        self._set_state(ConnectionState.IDLE)
        self._announce_disconnect(reason)

    async def _send_handshake(self, ws: Any) -> None:
        payload = self.codec.encode(ConnectMessage(self._capabilities))
        await ws.send(payload.decode("utf-8"))
        self.codec.negotiated_version = self._capabilities.protocol_version
        self.stats.handshakes_sent += 1
        self.stats.messages_sent += 1
        logger.debug(
            "Sent client capabilities (client_id=%s, protocol=%#06x)",
            self._capabilities.client_id,
            self._capabilities.protocol_version,
        )

    def _handle_message(self, data: str | bytes) -> None:
        result = self.codec.decode(data)

        if isinstance(result, DecodeError):
            if result.reason == DecodeErrorReason.VERSION_MISMATCH and result.frame:
                self._handle_version_mismatch(result)
                return
            self.stats.decode_errors += 1
            logger.warning("Dropping undecodable message: %s", result)
            return

        if isinstance(result, ConnectedAck):
            self.stats.session_id = result.session_id
            self.stats.server_version = result.server_version
            logger.info(
                "Server acknowledged: version=%s session=%s",
                result.server_version,
                result.session_id,
            )
            return

        self._accept_frame(result)

    def _handle_version_mismatch(self, error: DecodeError) -> None:
        self.stats.version_mismatches += 1
        log = logger.debug if self._mismatch_logged else logger.warning
        self._mismatch_logged = True
        if not self._accept_version_mismatch:
            self.stats.decode_errors += 1
            log("Dropping frame: %s", error)
            return
        log("Accepting frame despite %s", error)
        assert error.frame is not None
        self._accept_frame(error.frame)

    def _accept_frame(self, frame: Frame) -> None:
        last = self.stats.last_frame_id
        if last is not None and frame.frame_id != (last + 1) & UINT32_MAX:
            # Passed through unchanged; ordering is the consumer's concern
            self.stats.out_of_order_frames += 1
            logger.debug("Frame id %d does not follow %d", frame.frame_id, last)
        self.stats.last_frame_id = frame.frame_id
        self.stats.frames_received += 1

        fps = self.tracker.update(self._clock())
        self.dispatcher.publish(FrameReceived(frame=frame, fps=fps))

    # -- Internal: teardown ---------------------------------------------------

    async def _close_socket(self) -> None:
        cm, self._ws_cm = self._ws_cm, None
        self._ws = None
        if cm is None:
            return
        try:
            await cm.__aexit__(None, None, None)
        except Exception as exc:
            logger.debug("Error while closing socket: %s", exc)

    def _announce_disconnect(self, reason: str) -> None:
        if not self._announced:
            return
        self._announced = False
        self.stats.disconnects += 1
        assert self._endpoint is not None
        self.dispatcher.publish(Disconnected(endpoint=self._endpoint, reason=reason))

    # -- State management -----------------------------------------------------

    def _set_state(self, new_state: ConnectionState) -> None:
        if new_state == self._state or self._state == ConnectionState.SHUTDOWN:
            return
        old = self._state
        self._state = new_state
        logger.debug("State: %s -> %s", old.value, new_state.value)
        if self._on_state_change:
            self._on_state_change(new_state)

    def get_stats(self) -> dict[str, Any]:
        s = self.stats
        return {
            "state": self._state.value,
            "endpoint": self._endpoint.url if self._endpoint else None,
            "connect_attempts": s.connect_attempts,
            "connect_failures": s.connect_failures,
            "connect_timeouts": s.connect_timeouts,
            "handshakes_sent": s.handshakes_sent,
            "disconnects": s.disconnects,
            "frames_received": s.frames_received,
            "decode_errors": s.decode_errors,
            "version_mismatches": s.version_mismatches,
            "out_of_order_frames": s.out_of_order_frames,
            "messages_sent": s.messages_sent,
            "last_frame_id": s.last_frame_id,
            "session_id": s.session_id,
            "server_version": s.server_version,
            "frame_rate": self.tracker.get_stats(),
            "dispatcher": self.dispatcher.get_stats(),
        }
