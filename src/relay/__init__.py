"""Walkie-talkie audio relay server.

Pairs two peers per room and relays binary audio frames and JSON control
messages between them.
"""

from relay.config import RelayConfig
from relay.metrics import RelayMetrics
from relay.rooms import (
    InvalidRoomError,
    Room,
    RoomError,
    RoomFullError,
    RoomRegistry,
    RoomState,
)
from relay.router import RelayRouter
from relay.server import RelayServer

__all__ = [
    "InvalidRoomError",
    "RelayConfig",
    "RelayMetrics",
    "RelayRouter",
    "RelayServer",
    "Room",
    "RoomError",
    "RoomFullError",
    "RoomRegistry",
    "RoomState",
]
