"""Base transport abstraction for peer connections.

Defines the message-oriented, full-duplex channel used on both ends of the
relay: the server wraps each accepted WebSocket in a ``Connection`` and the
client wraps its outbound WebSocket in one.

Two message kinds travel over a channel: text (JSON control) and binary
(opaque audio). Implementations must preserve that framing.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from common.types import ConnectionID, InboundMessage

logger = logging.getLogger(__name__)

DEFAULT_SEND_TIMEOUT_S: float = 5.0


class Connection(ABC):
    """One open peer channel."""

    @abstractmethod
    async def send_text(self, payload: str) -> None:
        """Send a text (control) message.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    async def send_bytes(self, payload: bytes) -> None:
        """Send a binary (audio) message.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        pass

    @abstractmethod
    async def receive(self) -> AsyncIterator[InboundMessage]:
        """Yield inbound messages until the connection closes.

        Text messages are yielded as ``str``, binary messages as ``bytes``.
        The iterator ends quietly on a normal close.

        Raises:
            ConnectionError: If the connection fails abnormally
        """
        # Using yield to make this an async generator
        if False:
            yield ""

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        pass

    @property
    @abstractmethod
    def connection_id(self) -> ConnectionID:
        """Unique connection identifier for logging and membership."""
        pass

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Check if the connection can still carry messages."""
        pass

    @property
    def remote_address(self) -> str:
        """Peer address for logging, if known."""
        return "unknown"


async def send_safely(
    connection: Connection,
    payload: str | bytes,
    timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
) -> bool:
    """Send a message, tolerating closed or slow peers.

    Args:
        connection: Target connection
        payload: ``str`` is sent as text, ``bytes`` as binary
        timeout_s: Upper bound for the send

    Returns:
        True if the message was handed to the transport, False otherwise
    """
    if not connection.is_open:
        logger.debug(
            "Skipping send to closed connection",
            extra={"connection_id": connection.connection_id},
        )
        return False

    try:
        if isinstance(payload, bytes):
            await asyncio.wait_for(connection.send_bytes(payload), timeout=timeout_s)
        else:
            await asyncio.wait_for(connection.send_text(payload), timeout=timeout_s)
        return True
    except TimeoutError:
        logger.warning(
            "Send timed out",
            extra={"connection_id": connection.connection_id, "timeout_s": timeout_s},
        )
    except ConnectionError as e:
        logger.info(
            "Send to closed connection skipped",
            extra={"connection_id": connection.connection_id, "error": str(e)},
        )
    return False
