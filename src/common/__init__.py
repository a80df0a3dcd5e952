"""Shared types, wire protocol and transport abstraction.

Used by both the relay server (``relay``) and the walkie-talkie client
(``client``).
"""

from common.protocol import (
    ROOM_CAPACITY,
    AudioConfigMessage,
    ErrorCode,
    ErrorMessage,
    JoinMessage,
    LeaveMessage,
    RoomStateMessage,
    parse_control,
)
from common.transport import Connection, send_safely
from common.types import AudioChunk, ConnectionID, InboundMessage, MimeType, RoomID

__all__ = [
    "ROOM_CAPACITY",
    "AudioChunk",
    "AudioConfigMessage",
    "Connection",
    "ConnectionID",
    "ErrorCode",
    "ErrorMessage",
    "InboundMessage",
    "JoinMessage",
    "LeaveMessage",
    "MimeType",
    "RoomID",
    "RoomStateMessage",
    "parse_control",
    "send_safely",
]
