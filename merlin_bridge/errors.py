# =============================================================================
# MERLIN Bridge -- Error Types
# =============================================================================


class BridgeError(Exception):
    """Base exception for all bridge client errors."""


class BridgeConfigError(BridgeError):
    """Invalid endpoint or retry configuration."""


class BridgeConnectionError(BridgeError):
    """Connection-related errors (failed to connect, lost connection)."""


class BridgeTimeoutError(BridgeConnectionError):
    """Connection attempt exceeded the connect timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Connection timed out after {timeout:.1f}s")


class BridgeProtocolError(BridgeError):
    """Wire protocol errors (malformed envelopes, bad field types)."""
