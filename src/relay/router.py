"""Relay router: control-message interception and peer fan-out.

Every inbound message from a connection passes through ``handle_message``:

    binary                     → relayed verbatim to the peer
    text {"type": "join"}      → RoomRegistry.join, not relayed
    text {"type": "leave"}     → RoomRegistry.leave, not relayed
    text {"type": "audio-config"} and any other text
                               → relayed verbatim (unknown or malformed
                                 payloads still reach the peer)

The router never parses or transforms audio payloads; only the outer JSON
envelope of text messages is inspected.
"""

import asyncio
import logging

from common.protocol import ErrorMessage, parse_control, serialize
from common.transport import DEFAULT_SEND_TIMEOUT_S, Connection, send_safely
from common.types import InboundMessage
from relay.metrics import RelayMetrics
from relay.rooms import RoomError, RoomRegistry

logger = logging.getLogger(__name__)


class RelayRouter:
    """Routes messages between the members of a room.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        metrics: RelayMetrics | None = None,
        send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
    ) -> None:
        """Initialize router.

        Args:
            registry: Room registry shared by all connections
            metrics: Optional metrics sink
            send_timeout_s: Upper bound for each per-recipient send
        """
        self.registry = registry
        self.metrics = metrics or RelayMetrics()
        self.send_timeout_s = send_timeout_s

    async def handle_message(self, sender: Connection, message: InboundMessage) -> None:
        """Dispatch one inbound message.

        Args:
            sender: Connection the message arrived on
            message: ``bytes`` for audio frames, ``str`` for control/text
        """
        if isinstance(message, bytes):
            await self.relay(sender, message, is_binary=True)
            return

        envelope = parse_control(message)
        message_type = envelope.get("type") if envelope is not None else None

        if message_type == "join":
            await self._handle_join(sender, envelope.get("room"))  # type: ignore[union-attr]
        elif message_type == "leave":
            room_id = await self.registry.leave(sender)
            if room_id is not None:
                self.metrics.record_leave()
        else:
            if message_type == "audio-config":
                logger.debug(
                    "Relaying audio config",
                    extra={"connection_id": sender.connection_id},
                )
            elif envelope is None:
                logger.debug(
                    "Relaying non-JSON text message",
                    extra={"connection_id": sender.connection_id},
                )
            await self.relay(sender, message, is_binary=False)

    async def relay(self, sender: Connection, payload: str | bytes, is_binary: bool) -> int:
        """Deliver a payload unmodified to every other open member of the sender's room.

        Args:
            sender: Originating connection
            payload: Message to forward
            is_binary: Whether to forward as a binary frame

        Returns:
            Number of members the payload was delivered to
        """
        room_id = self.registry.room_of(sender)
        if room_id is None:
            self.metrics.record_dropped()
            logger.debug(
                "Dropping message from connection without room",
                extra={"connection_id": sender.connection_id, "binary": is_binary},
            )
            return 0

        if is_binary and isinstance(payload, str):
            payload = payload.encode("utf-8")
        elif not is_binary and isinstance(payload, bytes):
            payload = payload.decode("utf-8")

        targets = [
            member
            for member in self.registry.members(room_id)
            if member.connection_id != sender.connection_id and member.is_open
        ]
        if not targets:
            return 0

        results = await asyncio.gather(
            *(send_safely(target, payload, self.send_timeout_s) for target in targets)
        )
        delivered = sum(1 for ok in results if ok)

        self.metrics.record_relay(len(payload), is_binary, delivered, len(targets))
        logger.debug(
            "Relayed message",
            extra={
                "connection_id": sender.connection_id,
                "room_id": room_id,
                "binary": is_binary,
                "size": len(payload),
                "delivered": delivered,
            },
        )
        return delivered

    async def _handle_join(self, sender: Connection, raw_room_id: object) -> None:
        """Join the requested room, reporting rejections to the sender."""
        try:
            await self.registry.join(sender, raw_room_id)
            self.metrics.record_join()
        except RoomError as e:
            self.metrics.record_join_rejected(e.code.value)
            logger.info(
                "Join rejected",
                extra={
                    "connection_id": sender.connection_id,
                    "code": e.code.value,
                    "error": str(e),
                },
            )
            error = ErrorMessage(code=e.code, message=str(e))
            await send_safely(sender, serialize(error), self.send_timeout_s)
