"""Room registry: admission control and membership for paired rooms.

A room is created lazily by its first successful join and deleted as soon as
its last member leaves. Capacity is fixed at two members (one pair).

Every membership change is broadcast to the members of the affected room as a
``room-state`` message, the joiner included, so both sides observe pairing
completion.

Thread-safety: mutations are serialized by a single asyncio.Lock. The
capacity check and the insert happen under the same lock acquisition, so two
connections racing for the last slot cannot both be admitted.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from common.protocol import ROOM_CAPACITY, ErrorCode, RoomStateMessage, serialize
from common.transport import DEFAULT_SEND_TIMEOUT_S, Connection, send_safely
from common.types import RoomID

logger = logging.getLogger(__name__)


class RoomError(Exception):
    """Base exception for rejected room operations."""

    code: ErrorCode

    def __init__(self, message: str, room_id: str | None = None) -> None:
        super().__init__(message)
        self.room_id = room_id


class InvalidRoomError(RoomError):
    """Raised when a room id is missing, not a string, or blank."""

    code = ErrorCode.INVALID_ROOM


class RoomFullError(RoomError):
    """Raised when the target room already holds its capacity."""

    code = ErrorCode.ROOM_FULL


def normalize_room_id(raw: object) -> str:
    """Trim and validate a caller-supplied room id.

    Raises:
        InvalidRoomError: If the id is not a string or is empty after trimming
    """
    if not isinstance(raw, str):
        raise InvalidRoomError("Room id must be a string")

    room_id = raw.strip()
    if not room_id:
        raise InvalidRoomError("Room id must not be empty")
    return room_id


@dataclass
class Room:
    """Membership of a single room, keyed by connection id."""

    room_id: RoomID
    capacity: int = ROOM_CAPACITY
    members: dict[str, Connection] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.members)

    @property
    def is_full(self) -> bool:
        return self.count >= self.capacity

    def snapshot(self) -> list[Connection]:
        """Copy of the current members, safe to iterate across awaits."""
        return list(self.members.values())


@dataclass(frozen=True)
class RoomState:
    """Membership summary after a join or leave."""

    room_id: RoomID
    count: int
    limit: int = ROOM_CAPACITY

    def to_message(self) -> RoomStateMessage:
        return RoomStateMessage(room=self.room_id, count=self.count, limit=self.limit)


class RoomRegistry:
    """In-memory registry mapping room ids to member connections.

    The registry keeps non-owning references only; connections are owned by
    the transport and must be removed with ``leave`` when they close.

    Example:
        ```python
        registry = RoomRegistry()
        state = await registry.join(connection, "abc")
        assert registry.room_of(connection) == "abc"
        await registry.leave(connection)
        ```
    """

    def __init__(
        self,
        capacity: int = ROOM_CAPACITY,
        send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
    ) -> None:
        """Initialize registry.

        Args:
            capacity: Maximum members per room
            send_timeout_s: Upper bound for each room-state notification send
        """
        self.capacity = capacity
        self.send_timeout_s = send_timeout_s
        self._rooms: dict[str, Room] = {}
        # connection id → room id
        self._membership: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def join(self, connection: Connection, raw_room_id: object) -> RoomState:
        """Add a connection to a room, leaving its previous room first.

        Args:
            connection: Joining connection
            raw_room_id: Room id as received (validated and trimmed here)

        Returns:
            Room state after the join

        Raises:
            InvalidRoomError: If the room id is invalid (no state change)
            RoomFullError: If the room is at capacity (connection left unattached)
        """
        room_id = normalize_room_id(raw_room_id)

        async with self._lock:
            current = self._membership.get(connection.connection_id)

            if current == room_id:
                room = self._rooms[room_id]
                state = RoomState(room_id, room.count, self.capacity)
                await self._broadcast(room, state)
                return state

            if current is not None:
                await self._detach(connection, current)

            room = self._rooms.get(room_id)
            if room is not None and room.is_full:
                logger.info(
                    "Join rejected, room full",
                    extra={
                        "connection_id": connection.connection_id,
                        "room_id": room_id,
                        "count": room.count,
                    },
                )
                raise RoomFullError(f"Room '{room_id}' is full", room_id=room_id)

            if room is None:
                room = Room(room_id=room_id, capacity=self.capacity)
                self._rooms[room_id] = room
                logger.debug("Room created", extra={"room_id": room_id})

            room.members[connection.connection_id] = connection
            self._membership[connection.connection_id] = room_id

            state = RoomState(room_id, room.count, self.capacity)
            logger.info(
                "Connection joined room",
                extra={
                    "connection_id": connection.connection_id,
                    "room_id": room_id,
                    "count": state.count,
                },
            )
            await self._broadcast(room, state)
            return state

    async def leave(self, connection: Connection) -> RoomID | None:
        """Remove a connection from its room, if any.

        Idempotent: safe to call from an explicit leave and again on close.

        Returns:
            The room id that was left, or None if the connection was not in a room
        """
        async with self._lock:
            room_id = self._membership.get(connection.connection_id)
            if room_id is None:
                return None
            await self._detach(connection, room_id)
            return room_id

    def room_of(self, connection: Connection) -> RoomID | None:
        """Get the room a connection currently belongs to."""
        return self._membership.get(connection.connection_id)

    def members(self, room_id: RoomID) -> list[Connection]:
        """Snapshot of a room's members (empty if the room does not exist)."""
        room = self._rooms.get(room_id)
        if room is None:
            return []
        return room.snapshot()

    def get_state(self, room_id: RoomID) -> RoomState | None:
        """Current state of a room, or None if it does not exist."""
        room = self._rooms.get(room_id)
        if room is None:
            return None
        return RoomState(room_id, room.count, self.capacity)

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def get_summary(self) -> dict[str, int]:
        """Registry summary for logging/monitoring."""
        return {
            "rooms": len(self._rooms),
            "members": len(self._membership),
            "full_rooms": sum(1 for room in self._rooms.values() if room.is_full),
        }

    async def _detach(self, connection: Connection, room_id: RoomID) -> None:
        """Remove a member and notify or delete the room. Caller holds the lock."""
        self._membership.pop(connection.connection_id, None)
        room = self._rooms.get(room_id)
        if room is None:
            return

        room.members.pop(connection.connection_id, None)
        logger.info(
            "Connection left room",
            extra={
                "connection_id": connection.connection_id,
                "room_id": room_id,
                "count": room.count,
            },
        )

        if room.count == 0:
            del self._rooms[room_id]
            logger.debug("Room deleted", extra={"room_id": room_id})
            return

        await self._broadcast(room, RoomState(room_id, room.count, self.capacity))

    async def _broadcast(self, room: Room, state: RoomState) -> None:
        """Send a room-state notification to every member concurrently."""
        payload = serialize(state.to_message())
        await asyncio.gather(
            *(send_safely(member, payload, self.send_timeout_s) for member in room.snapshot())
        )
