"""Transport layer for relay peer connections."""

from relay.transport.websocket_transport import WebSocketTransport

__all__ = [
    "WebSocketTransport",
]
