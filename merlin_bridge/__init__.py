"""MERLIN AR bridge client.

Keeps a WebSocket connection to the MERLIN bridge server alive, announces
the headset's capabilities, and delivers detection frames with a running
frame rate.

Usage::

    from merlin_bridge import connect

    async with connect("192.168.1.20") as client:
        await client.subscribe("ObjectDetection")
        async for event in client:
            print(event.frame.frame_id, event.fps)
"""

from ._version import __version__
from .client import BridgeClient
from .config import BridgeConfig
from .connection import ConnectionManager
from .constants import DEFAULT_PORT, PROTOCOL_VERSION
from .dispatcher import EventDispatcher
from .errors import (
    BridgeConfigError,
    BridgeConnectionError,
    BridgeError,
    BridgeProtocolError,
    BridgeTimeoutError,
)
from .metrics import FrameMetricsTracker
from .protocol import ProtocolCodec
from .types import (
    BoundingBox,
    ClientCapabilities,
    ConfigureStreamMessage,
    Connected,
    ConnectedAck,
    ConnectionState,
    ConnectionStats,
    ConnectMessage,
    DecodeError,
    DecodeErrorReason,
    DetectedObject,
    Disconnected,
    Endpoint,
    Frame,
    FrameReceived,
    QualityPreset,
    RetryConfig,
    StreamType,
    SubscribeMessage,
    Vector3,
)


def connect(host: str, port: int = DEFAULT_PORT, **kwargs) -> BridgeClient:
    """Create a bridge client for ``host:port``.

    Use as an async context manager. Keyword arguments are
    :class:`BridgeConfig` fields or :class:`BridgeClient` options.
    """
    return BridgeClient(host=host, port=port, **kwargs)


__all__ = [
    "__version__",
    "connect",
    "PROTOCOL_VERSION",
    "BridgeClient",
    "BridgeConfig",
    "ConnectionManager",
    "EventDispatcher",
    "FrameMetricsTracker",
    "ProtocolCodec",
    "ConnectionState",
    "ConnectionStats",
    "Endpoint",
    "RetryConfig",
    "ClientCapabilities",
    "ConnectedAck",
    "Frame",
    "DetectedObject",
    "BoundingBox",
    "Vector3",
    "DecodeError",
    "DecodeErrorReason",
    "ConnectMessage",
    "ConfigureStreamMessage",
    "SubscribeMessage",
    "QualityPreset",
    "StreamType",
    "Connected",
    "Disconnected",
    "FrameReceived",
    "BridgeError",
    "BridgeConfigError",
    "BridgeConnectionError",
    "BridgeTimeoutError",
    "BridgeProtocolError",
]
