"""Client side of the relay channel."""

import logging
import uuid

from websockets.asyncio.client import connect
from websockets.exceptions import InvalidHandshake, InvalidURI

from common.websocket import WebSocketConnection

logger = logging.getLogger(__name__)


async def open_channel(url: str, max_message_bytes: int = 2**20) -> WebSocketConnection:
    """Connect to the relay.

    Args:
        url: Relay WebSocket URL (e.g., ws://localhost:8080/ws)
        max_message_bytes: Largest inbound frame accepted

    Returns:
        Open connection

    Raises:
        ConnectionError: If the relay cannot be reached or rejects the handshake
    """
    try:
        websocket = await connect(url, max_size=max_message_bytes)
    except (OSError, InvalidURI, InvalidHandshake, TimeoutError) as e:
        raise ConnectionError(f"Cannot connect to {url}: {e}") from e

    connection = WebSocketConnection(websocket, f"client-{uuid.uuid4().hex[:12]}")
    logger.info(f"Connected to {url}", extra={"connection_id": connection.connection_id})
    return connection
