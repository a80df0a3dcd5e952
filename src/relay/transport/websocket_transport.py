"""WebSocket transport implementation.

Accepts peer connections on the configured path (``/ws`` by default) and
hands each one to the relay as a ``WebSocketConnection``. Plain HTTP requests
on the same port are answered directly: ``/health`` returns ``ok`` and any
other path returns 404.
"""

import asyncio
import logging
import uuid
from http import HTTPStatus

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.http11 import Request, Response

from common.websocket import WebSocketConnection

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """WebSocket transport server.

    Manages the WebSocket server lifecycle and queues a ``WebSocketConnection``
    for every accepted peer. The relay takes them with ``accept_connection``.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        path: str = "/ws",
        max_message_bytes: int = 2**20,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port (0 picks a free port)
            path: Request path accepted for WebSocket upgrades
            max_message_bytes: Largest accepted frame
        """
        self._host = host
        self._port = port
        self._path = path
        self._max_message_bytes = max_message_bytes
        self._server: Server | None = None
        self._running = False
        self._connection_queue: asyncio.Queue[WebSocketConnection] = asyncio.Queue()

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "path": path},
        )

    @property
    def port(self) -> int:
        """Bound port (resolved after ``start`` when configured as 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await serve(
                self._handle_connection,
                self._host,
                self._port,
                process_request=self._process_request,
                max_size=self._max_message_bytes,
            )
            self._running = True
            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.port, "path": self._path},
            )
        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server, closing all open connections."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")
        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_connection(self) -> WebSocketConnection:
        """Wait for the next peer connection.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")
        return await self._connection_queue.get()

    def _process_request(
        self, connection: ServerConnection, request: Request
    ) -> Response | None:
        """Answer plain HTTP requests; let upgrades on the WebSocket path through."""
        path = request.path.split("?", 1)[0]
        if path == "/health":
            return connection.respond(HTTPStatus.OK, "ok")
        if path != self._path:
            return connection.respond(HTTPStatus.NOT_FOUND, "not found")
        return None

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle an upgraded WebSocket connection.

        The handler must stay alive for the lifetime of the connection; the
        relay reads from it on its own task.
        """
        connection_id = f"ws-{uuid.uuid4().hex[:12]}"
        connection = WebSocketConnection(websocket, connection_id)

        logger.info(
            "New WebSocket connection",
            extra={"connection_id": connection_id, "remote": connection.remote_address},
        )

        await self._connection_queue.put(connection)

        try:
            await websocket.wait_closed()
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        finally:
            logger.debug("WebSocket handler finished", extra={"connection_id": connection_id})
