"""WebSocket implementation of the peer connection.

Wraps a ``websockets`` asyncio connection (server or client side) as a
``Connection``. Text frames carry JSON control messages, binary frames carry
audio; frames pass through in both directions without re-encoding.
"""

import logging
from collections.abc import AsyncIterator

import websockets
from websockets.asyncio.connection import Connection as WebSocketProtocolConnection
from websockets.protocol import State

from common.transport import Connection
from common.types import ConnectionID, InboundMessage

logger = logging.getLogger(__name__)


class WebSocketConnection(Connection):
    """WebSocket-based peer connection."""

    def __init__(self, websocket: WebSocketProtocolConnection, connection_id: str) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._connected = True

        remote = websocket.remote_address
        self._remote_address = f"{remote[0]}:{remote[1]}" if remote else "unknown"

    @property
    def connection_id(self) -> ConnectionID:
        """Get unique connection identifier."""
        return self._connection_id

    @property
    def remote_address(self) -> str:
        return self._remote_address

    @property
    def is_open(self) -> bool:
        """Check if the connection is still active."""
        return self._connected and self._websocket.state == State.OPEN

    async def send_text(self, payload: str) -> None:
        await self._send(payload)

    async def send_bytes(self, payload: bytes) -> None:
        await self._send(payload)

    async def _send(self, payload: str | bytes) -> None:
        """Send one frame; ``str`` becomes a text frame, ``bytes`` a binary frame.

        Raises:
            ConnectionError: If the connection is closed or broken
        """
        if not self.is_open:
            raise ConnectionError("WebSocket connection is closed")

        try:
            await self._websocket.send(payload)
        except websockets.exceptions.ConnectionClosed as e:
            self._connected = False
            raise ConnectionError(f"WebSocket connection closed: {e}") from e

    async def receive(self) -> AsyncIterator[InboundMessage]:
        """Yield inbound frames until the peer disconnects.

        Raises:
            ConnectionError: If the connection fails abnormally
        """
        try:
            async for raw_message in self._websocket:
                yield raw_message
        except websockets.exceptions.ConnectionClosedError as e:
            self._connected = False
            raise ConnectionError(f"WebSocket receive error: {e}") from e
        finally:
            self._connected = False

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if self._websocket.state == State.CLOSED:
            return

        self._connected = False
        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )
