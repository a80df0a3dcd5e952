"""Unit tests for the control message protocol."""

import json

import pytest
from pydantic import ValidationError

from common.protocol import (
    ROOM_CAPACITY,
    AudioConfigMessage,
    ErrorCode,
    ErrorMessage,
    JoinMessage,
    LeaveMessage,
    RoomStateMessage,
    parse_control,
    serialize,
)


class TestSerialize:
    """Test wire encoding of control messages."""

    def test_join(self) -> None:
        assert json.loads(serialize(JoinMessage(room="abc"))) == {"type": "join", "room": "abc"}

    def test_leave(self) -> None:
        assert json.loads(serialize(LeaveMessage())) == {"type": "leave"}

    def test_room_state_default_limit(self) -> None:
        data = json.loads(serialize(RoomStateMessage(room="abc", count=1)))
        assert data == {"type": "room-state", "room": "abc", "count": 1, "limit": ROOM_CAPACITY}
        assert ROOM_CAPACITY == 2

    def test_error_code_is_wire_string(self) -> None:
        data = json.loads(serialize(ErrorMessage(code=ErrorCode.ROOM_FULL, message="full")))
        assert data == {"type": "error", "code": "room-full", "message": "full"}

    def test_audio_config_uses_camel_case(self) -> None:
        message = AudioConfigMessage(
            mime_type="audio/wav", sample_rate=48000, channels=1, time_slice_ms=250
        )
        data = json.loads(serialize(message))
        assert data == {
            "type": "audio-config",
            "mimeType": "audio/wav",
            "sampleRate": 48000,
            "channels": 1,
            "timeSliceMs": 250,
        }


class TestAudioConfigMessage:
    """Test parsing of relayed audio-config messages."""

    def test_parse_from_wire(self) -> None:
        message = AudioConfigMessage.model_validate(
            {"type": "audio-config", "mimeType": "audio/flac", "sampleRate": None, "channels": 2}
        )
        assert message.mime_type == "audio/flac"
        assert message.sample_rate is None
        assert message.channels == 2
        assert message.time_slice_ms == 250

    def test_rejects_non_positive_sample_rate(self) -> None:
        with pytest.raises(ValidationError):
            AudioConfigMessage.model_validate(
                {"type": "audio-config", "mimeType": "audio/wav", "sampleRate": 0}
            )

    def test_requires_mime_type(self) -> None:
        with pytest.raises(ValidationError):
            AudioConfigMessage.model_validate({"type": "audio-config"})


class TestParseControl:
    """Test envelope parsing."""

    def test_object(self) -> None:
        assert parse_control('{"type": "join", "room": "abc"}') == {"type": "join", "room": "abc"}

    @pytest.mark.parametrize("raw", ["not json", "{broken", "", "[1, 2]", '"join"', "42", "null"])
    def test_non_object_returns_none(self, raw: str) -> None:
        assert parse_control(raw) is None
