# =============================================================================
# MERLIN Bridge -- Type Definitions
# =============================================================================

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from .constants import (
    CONNECT_TIMEOUT,
    DEFAULT_PORT,
    RECONNECT_DELAY,
    WS_SCHEME,
)


class ConnectionState(str, Enum):
    """Bridge connection lifecycle state.

    Typical flow: IDLE -> CONNECTING -> OPEN -> CLOSING -> IDLE, looping
    while auto-retry is enabled. SHUTDOWN is terminal and reachable from
    any state.
    """

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    SHUTDOWN = "shutdown"


class QualityPreset(str, Enum):
    """Stream quality requested from the bridge server."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    ADAPTIVE = "Adaptive"


class StreamType(str, Enum):
    """Data streams the bridge server can publish."""

    OBJECT_DETECTION = "ObjectDetection"
    HAND_TRACKING = "HandTracking"
    SPATIAL_AUDIO = "SpatialAudio"
    SMART_HOME = "SmartHome"


class DecodeErrorReason(str, Enum):
    """Why an inbound message could not be turned into a ServerMessage."""

    MALFORMED = "malformed"
    NO_VARIANT = "no_variant"
    MULTIPLE_VARIANTS = "multiple_variants"
    VERSION_MISMATCH = "version_mismatch"


# -- Endpoint / retry ----------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Endpoint:
    """Remote bridge address. ``url`` is ``ws://{host}:{port}``."""

    host: str
    port: int = DEFAULT_PORT

    @property
    def url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{WS_SCHEME}://{host}:{self.port}"

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Reconnection behaviour.

    Attributes:
        delay: Seconds to wait between failed connection attempts.
        auto_retry: Keep retrying after a failure. When ``False`` the
            manager stops after the first failed attempt and stays idle.
        connect_timeout: Seconds before a pending attempt counts as failed.
    """

    delay: float = RECONNECT_DELAY
    auto_retry: bool = True
    connect_timeout: float = CONNECT_TIMEOUT


# -- Wire payloads -------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class BoundingBox:
    """2D box in the sender's coordinate space (normalized by default)."""

    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class Vector3:
    x: float
    y: float
    z: float


@dataclass(frozen=True, slots=True)
class DetectedObject:
    """One detection from the perception pipeline.

    Attributes:
        label: Class label (wire field ``class``).
        confidence: Detector score, expected in ``[0.0, 1.0]`` but not enforced.
        bbox: Bounding box.
        tracking_id: Tracker identity across frames, when the server tracks.
        position_3d: Estimated world position, when available.
    """

    label: str
    confidence: float
    bbox: BoundingBox
    tracking_id: int | None = None
    position_3d: Vector3 | None = None


@dataclass(frozen=True, slots=True)
class Frame:
    """A single perception result.

    Attributes:
        timestamp: Capture time in microseconds since the epoch (server clock).
        frame_id: Sequential id; not guaranteed monotonic on receipt.
        protocol_version: Protocol version the server stamped on the frame.
        objects: Detections in server order.
    """

    timestamp: int
    frame_id: int
    protocol_version: int
    objects: tuple[DetectedObject, ...] = ()

    def __repr__(self) -> str:
        return (
            f"Frame(frame_id={self.frame_id}, "
            f"timestamp={self.timestamp}, "
            f"objects={len(self.objects)})"
        )


@dataclass(frozen=True, slots=True)
class ConnectedAck:
    """Server acknowledgement sent after the socket opens."""

    server_version: str
    session_id: str


ServerMessage = Union[ConnectedAck, Frame]


@dataclass(frozen=True, slots=True)
class DecodeError:
    """Result of a failed decode. Returned, never raised.

    For ``VERSION_MISMATCH`` the fully decoded frame is attached so the
    caller can decide whether to accept it.
    """

    reason: DecodeErrorReason
    detail: str = ""
    frame: Frame | None = None

    def __str__(self) -> str:
        if self.detail:
            return f"{self.reason.value}: {self.detail}"
        return self.reason.value


@dataclass(frozen=True, slots=True)
class ClientCapabilities:
    """What this client announces in the handshake."""

    client_id: str
    protocol_version: int
    device_name: str
    supports_hand_tracking: bool = True
    supports_spatial_audio: bool = True
    max_fps: int = 30


@dataclass(frozen=True, slots=True)
class ConnectMessage:
    capabilities: ClientCapabilities


@dataclass(frozen=True, slots=True)
class ConfigureStreamMessage:
    target_fps: int
    quality: QualityPreset = QualityPreset.MEDIUM


@dataclass(frozen=True, slots=True)
class SubscribeMessage:
    streams: tuple[StreamType, ...]


ClientMessage = Union[ConnectMessage, ConfigureStreamMessage, SubscribeMessage]


# -- Notifications -------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Connected:
    """Handshake completed; the connection is open."""

    endpoint: Endpoint
    attempt: int


@dataclass(frozen=True, slots=True)
class Disconnected:
    """A previously announced connection ended."""

    endpoint: Endpoint
    reason: str = ""


@dataclass(frozen=True, slots=True)
class FrameReceived:
    """A frame was accepted. ``fps`` is the tracker's rate after this frame."""

    frame: Frame
    fps: float


BridgeEvent = Union[Connected, Disconnected, FrameReceived]


# -- Stats ---------------------------------------------------------------------


@dataclass
class ConnectionStats:
    """Counters for a bridge client across all sessions."""

    connect_attempts: int = 0
    connect_failures: int = 0
    connect_timeouts: int = 0
    handshakes_sent: int = 0
    disconnects: int = 0
    frames_received: int = 0
    decode_errors: int = 0
    version_mismatches: int = 0
    out_of_order_frames: int = 0
    messages_sent: int = 0
    last_frame_id: int | None = None
    session_id: str | None = None
    server_version: str | None = None
    connected_since: float | None = None
