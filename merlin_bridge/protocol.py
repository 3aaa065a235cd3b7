# =============================================================================
# MERLIN Bridge -- Wire Protocol Codec
# =============================================================================
#
# Every message is a JSON object with exactly one populated variant key:
#
# Outgoing (client -> server):
#   {"Connect": {...}}, {"ConfigureStream": {...}}, {"Subscribe": {...}}
#
# Incoming (server -> client):
#   {"Connected": {...}}, {"Frame": {...}}
#
# A variant key holding ``null`` counts as unpopulated.
# =============================================================================

from __future__ import annotations

from typing import Any

import orjson

from .constants import (
    CLIENT_VARIANTS,
    KEY_CONFIGURE_STREAM,
    KEY_CONNECT,
    KEY_CONNECTED,
    KEY_SUBSCRIBE,
    MAX_MESSAGE_SIZE,
    SERVER_VARIANTS,
    UINT16_MAX,
    UINT32_MAX,
    UINT64_MAX,
)
from .errors import BridgeProtocolError
from .types import (
    BoundingBox,
    ClientCapabilities,
    ClientMessage,
    ConfigureStreamMessage,
    ConnectedAck,
    ConnectMessage,
    DecodeError,
    DecodeErrorReason,
    DetectedObject,
    Frame,
    QualityPreset,
    ServerMessage,
    StreamType,
    SubscribeMessage,
    Vector3,
)


class ProtocolCodec:
    """Encode client messages and decode server messages.

    ``decode`` never raises: anything that cannot be turned into a
    :class:`~merlin_bridge.types.ConnectedAck` or
    :class:`~merlin_bridge.types.Frame` comes back as a
    :class:`~merlin_bridge.types.DecodeError`.

    Args:
        negotiated_version: Protocol version agreed at handshake. Frames
            stamped with a different version decode to a
            ``VERSION_MISMATCH`` error that carries the frame. ``None``
            disables the check until a handshake sets it.
        max_message_size: Inbound messages larger than this many bytes
            (UTF-8 encoded, for text messages) are rejected.
    """

    def __init__(
        self,
        negotiated_version: int | None = None,
        max_message_size: int = MAX_MESSAGE_SIZE,
    ) -> None:
        self.negotiated_version = negotiated_version
        self._max_message_size = max_message_size

    # -- Encoding --------------------------------------------------------------

    def encode(self, message: ClientMessage) -> bytes:
        """Encode a client message as a single-variant JSON envelope."""
        if isinstance(message, ConnectMessage):
            caps = message.capabilities
            body: dict[str, Any] = {
                "client_id": caps.client_id,
                "protocol_version": caps.protocol_version,
                "capabilities": {
                    "device_name": caps.device_name,
                    "supports_hand_tracking": caps.supports_hand_tracking,
                    "supports_spatial_audio": caps.supports_spatial_audio,
                    "max_fps": caps.max_fps,
                },
            }
            return orjson.dumps({KEY_CONNECT: body})

        if isinstance(message, ConfigureStreamMessage):
            body = {
                "target_fps": message.target_fps,
                "quality": QualityPreset(message.quality).value,
            }
            return orjson.dumps({KEY_CONFIGURE_STREAM: body})

        if isinstance(message, SubscribeMessage):
            body = {"streams": [StreamType(s).value for s in message.streams]}
            return orjson.dumps({KEY_SUBSCRIBE: body})

        raise BridgeProtocolError(
            f"Cannot encode message of type {type(message).__name__}"
        )

    # -- Decoding (server -> client) -------------------------------------------

    def decode(self, data: str | bytes) -> ServerMessage | DecodeError:
        """Decode one inbound message."""
        try:
            variant, body = self._open_envelope(data, SERVER_VARIANTS)
        except _EnvelopeError as exc:
            return DecodeError(exc.reason, str(exc))

        try:
            if variant == KEY_CONNECTED:
                return _parse_connected(body)
            frame = _parse_frame(body)
        except BridgeProtocolError as exc:
            return DecodeError(DecodeErrorReason.MALFORMED, f"{variant}: {exc}")

        expected = self.negotiated_version
        if expected is not None and frame.protocol_version != expected:
            return DecodeError(
                DecodeErrorReason.VERSION_MISMATCH,
                f"frame {frame.frame_id} has protocol version "
                f"{frame.protocol_version:#06x}, expected {expected:#06x}",
                frame=frame,
            )
        return frame

    # -- Decoding (client -> server) -------------------------------------------

    def decode_client(self, data: str | bytes) -> ClientMessage | DecodeError:
        """Decode a client message, as the bridge server would.

        Used by test servers and tooling that sit on the other end of the
        socket.
        """
        try:
            variant, body = self._open_envelope(data, CLIENT_VARIANTS)
        except _EnvelopeError as exc:
            return DecodeError(exc.reason, str(exc))

        try:
            if variant == KEY_CONNECT:
                return _parse_connect(body)
            if variant == KEY_CONFIGURE_STREAM:
                quality = _require_str(body, "quality")
                try:
                    preset = QualityPreset(quality)
                except ValueError:
                    raise BridgeProtocolError(f"unknown quality {quality!r}") from None
                return ConfigureStreamMessage(
                    target_fps=_require_int(body, "target_fps", UINT32_MAX),
                    quality=preset,
                )
            streams = body.get("streams")
            if not isinstance(streams, list):
                raise BridgeProtocolError("'streams' must be a list")
            try:
                return SubscribeMessage(tuple(StreamType(s) for s in streams))
            except ValueError as exc:
                raise BridgeProtocolError(str(exc)) from None
        except BridgeProtocolError as exc:
            return DecodeError(DecodeErrorReason.MALFORMED, f"{variant}: {exc}")

    # -- Helpers ---------------------------------------------------------------

    def _open_envelope(
        self, data: str | bytes, variants: tuple[str, ...]
    ) -> tuple[str, dict[str, Any]]:
        size = len(data)
        # UTF-8 needs at most 4 bytes per character
        if isinstance(data, str) and size * 4 > self._max_message_size:
            size = len(data.encode("utf-8", "surrogatepass"))
        if size > self._max_message_size:
            raise _EnvelopeError(
                DecodeErrorReason.MALFORMED,
                f"message exceeds max size ({size} > {self._max_message_size} bytes)",
            )
        try:
            parsed = orjson.loads(data)
        except orjson.JSONDecodeError as exc:
            raise _EnvelopeError(
                DecodeErrorReason.MALFORMED, f"invalid JSON: {exc}"
            ) from None

        if not isinstance(parsed, dict):
            raise _EnvelopeError(
                DecodeErrorReason.MALFORMED,
                f"envelope must be an object, got {type(parsed).__name__}",
            )

        populated = [k for k in variants if parsed.get(k) is not None]
        if not populated:
            unknown = sorted(k for k in parsed if k not in variants)
            detail = "no known variant populated"
            if unknown:
                detail += f" (unrecognised keys: {', '.join(unknown)})"
            raise _EnvelopeError(DecodeErrorReason.NO_VARIANT, detail)
        if len(populated) > 1:
            raise _EnvelopeError(
                DecodeErrorReason.MULTIPLE_VARIANTS,
                f"variants {', '.join(populated)} populated together",
            )

        variant = populated[0]
        body = parsed[variant]
        if not isinstance(body, dict):
            raise _EnvelopeError(
                DecodeErrorReason.MALFORMED, f"{variant}: body must be an object"
            )
        return variant, body


class _EnvelopeError(Exception):
    def __init__(self, reason: DecodeErrorReason, detail: str) -> None:
        self.reason = reason
        super().__init__(detail)


# -- Field parsing -------------------------------------------------------------


def _parse_connected(body: dict[str, Any]) -> ConnectedAck:
    return ConnectedAck(
        server_version=_require_str(body, "server_version"),
        session_id=_require_str(body, "session_id"),
    )


def _parse_frame(body: dict[str, Any]) -> Frame:
    raw_objects = body.get("objects")
    if raw_objects is None:
        raw_objects = []
    elif not isinstance(raw_objects, list):
        raise BridgeProtocolError("'objects' must be a list")

    objects = []
    for index, raw in enumerate(raw_objects):
        if not isinstance(raw, dict):
            raise BridgeProtocolError(f"objects[{index}] must be an object")
        try:
            objects.append(_parse_object(raw))
        except BridgeProtocolError as exc:
            raise BridgeProtocolError(f"objects[{index}]: {exc}") from None

    return Frame(
        timestamp=_require_int(body, "timestamp", UINT64_MAX),
        frame_id=_require_int(body, "frame_id", UINT32_MAX),
        protocol_version=_require_int(body, "protocol_version", UINT16_MAX),
        objects=tuple(objects),
    )


def _parse_object(raw: dict[str, Any]) -> DetectedObject:
    bbox = raw.get("bbox")
    if not isinstance(bbox, dict):
        raise BridgeProtocolError("'bbox' must be an object")

    tracking_id = None
    if raw.get("tracking_id") is not None:
        tracking_id = _require_int(raw, "tracking_id", UINT32_MAX)

    position = None
    if raw.get("position_3d") is not None:
        pos = raw["position_3d"]
        if not isinstance(pos, dict):
            raise BridgeProtocolError("'position_3d' must be an object")
        position = Vector3(
            x=_require_float(pos, "x"),
            y=_require_float(pos, "y"),
            z=_require_float(pos, "z"),
        )

    return DetectedObject(
        label=_require_str(raw, "class"),
        confidence=_require_float(raw, "confidence"),
        bbox=BoundingBox(
            x=_require_float(bbox, "x"),
            y=_require_float(bbox, "y"),
            width=_require_float(bbox, "width"),
            height=_require_float(bbox, "height"),
        ),
        tracking_id=tracking_id,
        position_3d=position,
    )


def _parse_connect(body: dict[str, Any]) -> ConnectMessage:
    caps = body.get("capabilities")
    if not isinstance(caps, dict):
        raise BridgeProtocolError("'capabilities' must be an object")
    return ConnectMessage(
        ClientCapabilities(
            client_id=_require_str(body, "client_id"),
            protocol_version=_require_int(body, "protocol_version", UINT16_MAX),
            device_name=_require_str(caps, "device_name"),
            supports_hand_tracking=_require_bool(caps, "supports_hand_tracking"),
            supports_spatial_audio=_require_bool(caps, "supports_spatial_audio"),
            max_fps=_require_int(caps, "max_fps", UINT32_MAX),
        )
    )


def _require_str(body: dict[str, Any], key: str) -> str:
    value = body.get(key)
    if not isinstance(value, str):
        raise BridgeProtocolError(f"'{key}' must be a string")
    return value


def _require_bool(body: dict[str, Any], key: str) -> bool:
    value = body.get(key)
    if not isinstance(value, bool):
        raise BridgeProtocolError(f"'{key}' must be a boolean")
    return value


def _require_int(body: dict[str, Any], key: str, upper: int) -> int:
    value = body.get(key)
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise BridgeProtocolError(f"'{key}' must be an integer")
    if not 0 <= value <= upper:
        raise BridgeProtocolError(f"'{key}' out of range: {value}")
    return value


def _require_float(body: dict[str, Any], key: str) -> float:
    value = body.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise BridgeProtocolError(f"'{key}' must be a number")
    return float(value)
