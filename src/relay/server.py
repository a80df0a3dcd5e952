"""Relay server with WebSocket transport and room-scoped fan-out.

Main server implementation that:
1. Starts the WebSocket transport (``/ws``, with ``/health`` on the same port)
2. Provides HTTP health check and metrics endpoints
3. Accepts peer connections, one handler task per connection
4. Routes join/leave through the room registry and relays everything else
5. Removes closed connections from their room and notifies the remaining peer
"""

import argparse
import asyncio
import contextlib
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from common.transport import Connection
from relay.config import RelayConfig
from relay.health import setup_health_routes
from relay.metrics import RelayMetrics
from relay.rooms import RoomRegistry
from relay.router import RelayRouter
from relay.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent / "configs" / "relay.yaml"


class RelayServer:
    """Relay server owning the registry, router and transports.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: RelayConfig,
        registry: RoomRegistry | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        """Initialize relay server.

        Args:
            config: Server configuration
            registry: Optional pre-created registry (for testing)
            metrics: Optional pre-created metrics (for testing)
        """
        self.config = config
        send_timeout_s = config.websocket.send_timeout_s

        self.registry = registry or RoomRegistry(send_timeout_s=send_timeout_s)
        self.metrics = metrics or RelayMetrics()
        self.router = RelayRouter(self.registry, self.metrics, send_timeout_s)

        ws_config = config.websocket
        self.transport = WebSocketTransport(
            host=ws_config.host,
            port=ws_config.port,
            path=ws_config.path,
            max_message_bytes=ws_config.max_message_bytes,
        )

        self._health_runner: AppRunner | None = None
        self._accept_task: asyncio.Task[None] | None = None
        self._connection_tasks: set[asyncio.Task[None]] = set()
        self._connections: dict[str, Connection] = {}

    @property
    def port(self) -> int:
        """Bound WebSocket port."""
        return self.transport.port

    @property
    def health_port(self) -> int | None:
        """Bound health server port, or None when it is not running."""
        if self._health_runner is None:
            return None
        for address in self._health_runner.addresses:
            return int(address[1])
        return None

    async def handle_connection(self, connection: Connection) -> None:
        """Per-connection loop: route every inbound message until close.

        The connection always leaves its room on exit, whatever the cause.

        Args:
            connection: Newly accepted connection
        """
        connection_id = connection.connection_id
        self._connections[connection_id] = connection
        self.metrics.record_connection_opened()
        logger.info(
            "Peer connected",
            extra={"connection_id": connection_id, "remote": connection.remote_address},
        )

        try:
            async for message in connection.receive():
                await self.router.handle_message(connection, message)
        except ConnectionError as e:
            logger.warning(
                "Peer connection error",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        except asyncio.CancelledError:
            logger.debug("Connection handler cancelled", extra={"connection_id": connection_id})
            raise
        except Exception:
            logger.exception(
                "Unexpected error in connection handler",
                extra={"connection_id": connection_id},
            )
        finally:
            room_id = await self.registry.leave(connection)
            if room_id is not None:
                self.metrics.record_leave()
            self._connections.pop(connection_id, None)
            self.metrics.record_connection_closed()
            logger.info(
                "Peer disconnected",
                extra={
                    "connection_id": connection_id,
                    "remote": connection.remote_address,
                    "room_id": room_id,
                },
            )

    async def start(self) -> None:
        """Start the transport, the health server and the accept loop.

        Raises:
            OSError: If port binding fails
            RuntimeError: If the transport fails to start
        """
        await self.transport.start()

        if self.config.health.enabled:
            health_app = Application()
            setup_health_routes(health_app, self.registry, self.metrics)

            self._health_runner = AppRunner(health_app)
            await self._health_runner.setup()
            site = TCPSite(self._health_runner, self.config.health.host, self.config.health_port)
            await site.start()
            logger.info("Health check server started", extra={"port": self.config.health_port})

        self._accept_task = asyncio.create_task(self._accept_loop())
        logger.info("Relay server ready", extra={"port": self.port})

    async def stop(self) -> None:
        """Stop accepting, close every connection and release the ports."""
        logger.info("Shutting down relay server")

        if self._accept_task is not None:
            self._accept_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._accept_task
            self._accept_task = None

        for connection in list(self._connections.values()):
            await connection.close()

        await self.transport.stop()
        logger.info("WebSocket transport stopped")

        if self._connection_tasks:
            logger.info(
                "Waiting for connections to complete",
                extra={"count": len(self._connection_tasks)},
            )
            _, pending = await asyncio.wait(
                self._connection_tasks, timeout=self.config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
            logger.info("Health check server stopped")

        logger.info("Relay server stopped", extra=self.metrics.get_summary())

    async def _accept_loop(self) -> None:
        """Spawn a handler task for every accepted connection."""
        while True:
            connection = await self.transport.accept_connection()
            task = asyncio.create_task(self.handle_connection(connection))
            self._connection_tasks.add(task)
            task.add_done_callback(self._connection_tasks.discard)


async def start_server(config_path: Path | None = None, server: RelayServer | None = None) -> None:
    """Start the relay server and run until cancelled.

    Args:
        config_path: Path to YAML config file (defaults apply if missing)
        server: Optional pre-created server (for testing)
    """
    config = RelayConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=config.logging_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if server is None:
        server = RelayServer(config)

    await server.start()
    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Walkie-talkie audio relay server")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Relay server interrupted")


if __name__ == "__main__":
    main()
