"""Command-line bridge client.

Connects to a MERLIN bridge server and logs connection events and the
objects detected in each frame.

    merlin-bridge --host 192.168.1.20
    python -m merlin_bridge --host localhost --port 8765 --no-auto-retry -v
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

from ._version import __version__
from .client import BridgeClient
from .config import BridgeConfig
from .constants import (
    CONNECT_TIMEOUT,
    DEFAULT_PORT,
    DEFAULT_TARGET_FPS,
    RECONNECT_DELAY,
)
from .errors import BridgeConfigError
from .types import Connected, Disconnected, FrameReceived

log = logging.getLogger("merlin_bridge.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="merlin-bridge", description="MERLIN AR bridge client"
    )
    parser.add_argument("--host", required=True, help="Bridge server host or IP")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument(
        "--retry-delay",
        type=float,
        default=RECONNECT_DELAY,
        help=f"Seconds between failed attempts (default: {RECONNECT_DELAY})",
    )
    parser.add_argument(
        "--no-auto-retry",
        action="store_true",
        help="Stay idle after the first failed attempt",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=CONNECT_TIMEOUT,
        help=f"Connect timeout in seconds (default: {CONNECT_TIMEOUT})",
    )
    parser.add_argument(
        "--target-fps",
        type=int,
        default=DEFAULT_TARGET_FPS,
        help="Frame rate advertised to the server",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=__version__)
    return parser


def config_from_args(args: argparse.Namespace) -> BridgeConfig:
    return BridgeConfig(
        host=args.host,
        port=args.port,
        reconnect_delay=args.retry_delay,
        auto_reconnect=not args.no_auto_retry,
        connect_timeout=args.timeout,
        target_fps=args.target_fps,
    )


async def run(config: BridgeConfig) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    client = BridgeClient(config)

    @client.on_connected
    def _connected(event: Connected) -> None:
        log.info("Connected to %s (attempt %d)", event.endpoint, event.attempt)

    @client.on_disconnected
    def _disconnected(event: Disconnected) -> None:
        log.info("Disconnected from %s: %s", event.endpoint, event.reason)

    @client.on_frame
    def _frame(event: FrameReceived) -> None:
        labels = ", ".join(obj.label for obj in event.frame.objects) or "-"
        log.info("frame %d  %5.1f fps  [%s]", event.frame.frame_id, event.fps, labels)

    async with client:
        stopper = asyncio.ensure_future(stop.wait())
        watcher = asyncio.ensure_future(client.connection.wait_stopped())
        await asyncio.wait({stopper, watcher}, return_when=asyncio.FIRST_COMPLETED)
        for task in (stopper, watcher):
            task.cancel()
        if watcher.done() and not stop.is_set():
            log.warning("Gave up connecting to %s", config.endpoint)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    config = config_from_args(args)
    try:
        config.validate()
    except BridgeConfigError as exc:
        log.error("%s", exc)
        return 2
    asyncio.run(run(config))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
