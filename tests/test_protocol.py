"""Tests for the bridge wire codec."""

import json

import pytest

from merlin_bridge.constants import PROTOCOL_VERSION
from merlin_bridge.errors import BridgeProtocolError
from merlin_bridge.protocol import ProtocolCodec
from merlin_bridge.types import (
    ClientCapabilities,
    ConfigureStreamMessage,
    ConnectedAck,
    ConnectMessage,
    DecodeError,
    DecodeErrorReason,
    Frame,
    QualityPreset,
    StreamType,
    SubscribeMessage,
)

from tests.fakes import frame_message

OBJECT = {
    "class": "cup",
    "confidence": 0.92,
    "bbox": {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.4},
}


class TestEncode:
    def test_connect_is_single_variant(self):
        caps = ClientCapabilities(
            client_id="quest-1",
            protocol_version=PROTOCOL_VERSION,
            device_name="Meta Quest 3",
            max_fps=30,
        )
        parsed = json.loads(ProtocolCodec().encode(ConnectMessage(caps)))
        assert list(parsed) == ["Connect"]
        assert parsed["Connect"] == {
            "client_id": "quest-1",
            "protocol_version": 256,
            "capabilities": {
                "device_name": "Meta Quest 3",
                "supports_hand_tracking": True,
                "supports_spatial_audio": True,
                "max_fps": 30,
            },
        }

    def test_configure_stream(self):
        msg = ConfigureStreamMessage(target_fps=15, quality=QualityPreset.ADAPTIVE)
        parsed = json.loads(ProtocolCodec().encode(msg))
        assert parsed == {"ConfigureStream": {"target_fps": 15, "quality": "Adaptive"}}

    def test_subscribe(self):
        msg = SubscribeMessage((StreamType.OBJECT_DETECTION, StreamType.SMART_HOME))
        parsed = json.loads(ProtocolCodec().encode(msg))
        assert parsed == {"Subscribe": {"streams": ["ObjectDetection", "SmartHome"]}}

    def test_unknown_message_raises(self):
        with pytest.raises(BridgeProtocolError):
            ProtocolCodec().encode("hello")  # type: ignore[arg-type]

    def test_client_side_decode_recovers_capabilities(self):
        codec = ProtocolCodec()
        caps = ClientCapabilities("c", PROTOCOL_VERSION, "Quest", False, True, 60)
        decoded = codec.decode_client(codec.encode(ConnectMessage(caps)))
        assert decoded == ConnectMessage(caps)


class TestDecodeFrame:
    def test_minimal_frame(self):
        result = ProtocolCodec().decode(frame_message(7, timestamp=123))
        assert isinstance(result, Frame)
        assert result.frame_id == 7
        assert result.timestamp == 123
        assert result.protocol_version == PROTOCOL_VERSION
        assert result.objects == ()

    def test_objects_preserve_order_and_optional_fields(self):
        tracked = dict(OBJECT, **{"class": "chair", "tracking_id": 4,
                                   "position_3d": {"x": 1, "y": 2.5, "z": -1}})
        result = ProtocolCodec().decode(frame_message(1, objects=[OBJECT, tracked]))
        assert isinstance(result, Frame)
        assert [o.label for o in result.objects] == ["cup", "chair"]
        cup, chair = result.objects
        assert cup.tracking_id is None
        assert cup.position_3d is None
        assert cup.bbox.width == pytest.approx(0.3)
        assert chair.tracking_id == 4
        assert chair.position_3d.y == pytest.approx(2.5)

    def test_null_objects_is_empty(self):
        data = json.dumps(
            {"Frame": {"timestamp": 1, "frame_id": 1, "protocol_version": 256,
                       "objects": None}}
        )
        result = ProtocolCodec().decode(data)
        assert isinstance(result, Frame)
        assert result.objects == ()

    def test_accepts_bytes(self):
        result = ProtocolCodec().decode(frame_message(3).encode())
        assert isinstance(result, Frame)

    def test_frame_id_not_reordered(self):
        codec = ProtocolCodec()
        ids = [codec.decode(frame_message(i)).frame_id for i in (5, 3, 9)]
        assert ids == [5, 3, 9]


class TestDecodeConnected:
    def test_connected_ack(self):
        data = json.dumps({"Connected": {"server_version": "1.2.0", "session_id": "s-1"}})
        result = ProtocolCodec().decode(data)
        assert result == ConnectedAck(server_version="1.2.0", session_id="s-1")

    def test_null_sibling_is_unpopulated(self):
        data = json.dumps(
            {"Connected": {"server_version": "1", "session_id": "s"}, "Frame": None}
        )
        assert isinstance(ProtocolCodec().decode(data), ConnectedAck)


class TestDecodeErrors:
    def _reason(self, data, codec=None):
        result = (codec or ProtocolCodec()).decode(data)
        assert isinstance(result, DecodeError)
        return result.reason

    def test_invalid_json(self):
        assert self._reason("{not json") == DecodeErrorReason.MALFORMED

    def test_non_object_envelope(self):
        assert self._reason("[1, 2]") == DecodeErrorReason.MALFORMED

    def test_empty_object(self):
        assert self._reason("{}") == DecodeErrorReason.NO_VARIANT

    def test_unknown_variant(self):
        result = ProtocolCodec().decode('{"Heartbeat": {}}')
        assert result.reason == DecodeErrorReason.NO_VARIANT
        assert "Heartbeat" in result.detail

    def test_two_variants(self):
        data = json.dumps(
            {
                "Connected": {"server_version": "1", "session_id": "s"},
                "Frame": json.loads(frame_message(1))["Frame"],
            }
        )
        assert self._reason(data) == DecodeErrorReason.MULTIPLE_VARIANTS

    def test_missing_field(self):
        data = json.dumps({"Frame": {"timestamp": 1, "protocol_version": 256}})
        assert self._reason(data) == DecodeErrorReason.MALFORMED

    def test_negative_frame_id(self):
        assert self._reason(frame_message(-1)) == DecodeErrorReason.MALFORMED

    def test_frame_id_overflow(self):
        assert self._reason(frame_message(2**32)) == DecodeErrorReason.MALFORMED

    def test_bool_is_not_an_integer(self):
        data = json.dumps(
            {"Frame": {"timestamp": 1, "frame_id": True, "protocol_version": 256}}
        )
        assert self._reason(data) == DecodeErrorReason.MALFORMED

    def test_bad_object_reports_index(self):
        bad = {"class": "cup", "confidence": "high", "bbox": OBJECT["bbox"]}
        result = ProtocolCodec().decode(frame_message(1, objects=[OBJECT, bad]))
        assert result.reason == DecodeErrorReason.MALFORMED
        assert "objects[1]" in result.detail

    def test_oversized_message(self):
        codec = ProtocolCodec(max_message_size=32)
        assert self._reason(frame_message(1), codec) == DecodeErrorReason.MALFORMED

    def test_size_limit_counts_utf8_bytes(self):
        label = {**OBJECT, "class": "カップ" * 30}
        message = json.loads(frame_message(1, objects=[label]))
        text = json.dumps(message, ensure_ascii=False)
        encoded = len(text.encode("utf-8"))
        assert encoded > len(text) + 100

        result = ProtocolCodec(max_message_size=len(text) + 10).decode(text)
        assert isinstance(result, DecodeError)
        assert result.reason == DecodeErrorReason.MALFORMED
        assert "exceeds max size" in result.detail

        frame = ProtocolCodec(max_message_size=encoded).decode(text)
        assert isinstance(frame, Frame)
        assert frame.objects[0].label == "カップ" * 30

    def test_never_raises_on_garbage(self):
        codec = ProtocolCodec()
        for data in ("", "null", "42", '"Frame"', '{"Frame": 1}', b"\xff\xfe"):
            assert isinstance(codec.decode(data), DecodeError)


class TestVersionCheck:
    def test_no_check_before_handshake(self):
        result = ProtocolCodec().decode(frame_message(1, protocol_version=0x0200))
        assert isinstance(result, Frame)

    def test_mismatch_carries_frame(self):
        codec = ProtocolCodec(negotiated_version=PROTOCOL_VERSION)
        result = codec.decode(frame_message(9, protocol_version=0x0200))
        assert isinstance(result, DecodeError)
        assert result.reason == DecodeErrorReason.VERSION_MISMATCH
        assert result.frame.frame_id == 9

    def test_matching_version(self):
        codec = ProtocolCodec(negotiated_version=PROTOCOL_VERSION)
        assert isinstance(codec.decode(frame_message(1)), Frame)

    def test_connected_ack_unaffected(self):
        codec = ProtocolCodec(negotiated_version=0x0300)
        data = json.dumps({"Connected": {"server_version": "9", "session_id": "x"}})
        assert isinstance(codec.decode(data), ConnectedAck)


class TestDecodeClient:
    def test_configure_stream(self):
        data = '{"ConfigureStream": {"target_fps": 10, "quality": "Low"}}'
        assert ProtocolCodec().decode_client(data) == ConfigureStreamMessage(
            10, QualityPreset.LOW
        )

    def test_unknown_quality(self):
        data = '{"ConfigureStream": {"target_fps": 10, "quality": "Ultra"}}'
        result = ProtocolCodec().decode_client(data)
        assert result.reason == DecodeErrorReason.MALFORMED

    def test_server_variant_rejected(self):
        result = ProtocolCodec().decode_client(frame_message(1))
        assert result.reason == DecodeErrorReason.NO_VARIANT
