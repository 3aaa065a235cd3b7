# =============================================================================
# MERLIN Bridge -- Configuration
# =============================================================================

from __future__ import annotations

import ipaddress
import math
import platform
import uuid
from dataclasses import dataclass, field

from .constants import (
    CONNECT_TIMEOUT,
    DEFAULT_DEVICE_NAME,
    DEFAULT_PORT,
    DEFAULT_TARGET_FPS,
    PROTOCOL_VERSION,
    RECONNECT_DELAY,
    UINT16_MAX,
    UINT32_MAX,
)
from .errors import BridgeConfigError
from .types import ClientCapabilities, Endpoint, RetryConfig


def default_client_id() -> str:
    """Stable per-host identifier, derived from the node name."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, platform.node() or "merlin-bridge"))


@dataclass
class BridgeConfig:
    """Settings for a bridge client.

    Attributes:
        host: Bridge server host name or IP address. Required.
        port: Bridge server port (default 8765).
        reconnect_delay: Seconds between failed connection attempts.
        auto_reconnect: Retry after failures and disconnects.
        connect_timeout: Seconds before a connection attempt is abandoned.
        target_fps: Advertised as ``max_fps`` in the handshake only.
        device_name: Device name sent in the handshake.
        client_id: Opaque client identifier (stable per host by default).
        supports_hand_tracking: Capability flag sent in the handshake.
        supports_spatial_audio: Capability flag sent in the handshake.
        protocol_version: Version announced at handshake and expected on frames.
        accept_version_mismatch: Deliver frames stamped with a different
            protocol version instead of dropping them.
    """

    host: str = ""
    port: int = DEFAULT_PORT
    reconnect_delay: float = RECONNECT_DELAY
    auto_reconnect: bool = True
    connect_timeout: float = CONNECT_TIMEOUT
    target_fps: int = DEFAULT_TARGET_FPS
    device_name: str = DEFAULT_DEVICE_NAME
    client_id: str = field(default_factory=default_client_id)
    supports_hand_tracking: bool = True
    supports_spatial_audio: bool = True
    protocol_version: int = PROTOCOL_VERSION
    accept_version_mismatch: bool = True

    @property
    def endpoint(self) -> Endpoint:
        return Endpoint(self.host, self.port)

    @property
    def retry(self) -> RetryConfig:
        return RetryConfig(
            delay=self.reconnect_delay,
            auto_retry=self.auto_reconnect,
            connect_timeout=self.connect_timeout,
        )

    @property
    def capabilities(self) -> ClientCapabilities:
        return ClientCapabilities(
            client_id=self.client_id,
            protocol_version=self.protocol_version,
            device_name=self.device_name,
            supports_hand_tracking=self.supports_hand_tracking,
            supports_spatial_audio=self.supports_spatial_audio,
            max_fps=self.target_fps,
        )

    def validate(self) -> None:
        """Raise :class:`BridgeConfigError` on the first invalid setting."""
        validate_endpoint(self.endpoint)
        validate_retry(self.retry)
        if not 1 <= self.target_fps <= UINT32_MAX:
            raise BridgeConfigError(f"target_fps must be positive, got {self.target_fps}")
        if not self.client_id:
            raise BridgeConfigError("client_id must not be empty")
        if not 0 <= self.protocol_version <= UINT16_MAX:
            raise BridgeConfigError(
                f"protocol_version must fit in 16 bits, got {self.protocol_version}"
            )


def validate_endpoint(endpoint: Endpoint) -> None:
    host = endpoint.host
    if not isinstance(host, str) or not host.strip():
        raise BridgeConfigError("Endpoint host is empty")
    if host != host.strip() or any(c.isspace() for c in host):
        raise BridgeConfigError(f"Endpoint host contains whitespace: {host!r}")
    if "://" in host or "/" in host:
        raise BridgeConfigError(
            f"Endpoint host must be a bare host name or address, got {host!r}"
        )
    if ":" in host:
        try:
            ipaddress.IPv6Address(host)
        except ValueError:
            raise BridgeConfigError(
                f"Endpoint host must not include a port, got {host!r}"
            ) from None
    port = endpoint.port
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise BridgeConfigError(f"Endpoint port out of range: {port!r}")


def validate_retry(retry: RetryConfig) -> None:
    if not math.isfinite(retry.delay) or retry.delay < 0:
        raise BridgeConfigError(f"Retry delay must be >= 0, got {retry.delay}")
    if not math.isfinite(retry.connect_timeout) or retry.connect_timeout <= 0:
        raise BridgeConfigError(
            f"Connect timeout must be > 0, got {retry.connect_timeout}"
        )
