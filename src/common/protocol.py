"""WebSocket control message protocol definitions.

Defines Pydantic models for the JSON control plane. Audio travels as raw
binary WebSocket messages and is never wrapped in JSON.

Client → Server:
    - ``join``: enter a room
    - ``leave``: leave the current room
    - ``audio-config``: advisory encoding metadata, relayed to the peer

Server → Client:
    - ``room-state``: membership count after every join/leave
    - ``error``: join rejections (``invalid-room``, ``room-full``)
"""

import json
from enum import StrEnum
from typing import Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field

# Maximum members per room (one pair)
ROOM_CAPACITY: Final[int] = 2


class ErrorCode(StrEnum):
    """Machine-readable error codes sent in ``error`` messages."""

    INVALID_ROOM = "invalid-room"
    ROOM_FULL = "room-full"


class JoinMessage(BaseModel):
    """Client → Server: join (or switch to) a room."""

    type: Literal["join"] = "join"
    room: str = Field(..., description="Room identifier (trimmed, case-sensitive)")


class LeaveMessage(BaseModel):
    """Client → Server: leave the current room."""

    type: Literal["leave"] = "leave"


class AudioConfigMessage(BaseModel):
    """Client → Peer: encoding metadata for the binary frames that follow.

    Sent once per capture session and relayed verbatim so the receiver can
    build a matching decode context.
    """

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["audio-config"] = "audio-config"
    mime_type: str = Field(..., alias="mimeType", description="Container/codec identifier")
    sample_rate: int | None = Field(
        default=None, gt=0, alias="sampleRate", description="Device sample rate in Hz"
    )
    channels: int | None = Field(
        default=None, gt=0, description="Device channel count"
    )
    time_slice_ms: int = Field(
        default=250, ge=1, alias="timeSliceMs", description="Chunk interval in milliseconds"
    )


class RoomStateMessage(BaseModel):
    """Server → Client: room membership after a change."""

    type: Literal["room-state"] = "room-state"
    room: str = Field(..., description="Room identifier")
    count: int = Field(..., ge=0, description="Current member count")
    limit: int = Field(default=ROOM_CAPACITY, description="Room capacity")


class ErrorMessage(BaseModel):
    """Server → Client: request rejected."""

    type: Literal["error"] = "error"
    code: ErrorCode = Field(..., description="Error code")
    message: str = Field(..., description="Human readable description")


def serialize(message: BaseModel) -> str:
    """Encode a control message as wire JSON (camelCase aliases applied)."""
    return message.model_dump_json(by_alias=True)


def parse_control(raw: str) -> dict[str, Any] | None:
    """Parse the outer envelope of a text message.

    Only the envelope is inspected; payload fields are left to the handler.

    Args:
        raw: Text message as received

    Returns:
        The decoded JSON object, or None if the text is not a JSON object
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None

    if not isinstance(data, dict):
        return None
    return data
