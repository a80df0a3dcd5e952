"""Health check endpoints for the relay.

Provides HTTP endpoints for load balancers, monitoring systems and
orchestration tools (e.g., Docker healthcheck, Kubernetes liveness probe).
"""

import logging
import time
from typing import Any

from aiohttp import web

from relay.metrics import RelayMetrics
from relay.rooms import RoomRegistry

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the relay.

    Provides:
    - /health: plain ``ok`` liveness probe
    - /liveness: JSON liveness with uptime
    - /metrics/summary: relay and room metrics as JSON
    """

    def __init__(
        self,
        registry: RoomRegistry | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            registry: RoomRegistry instance (optional)
            metrics: RelayMetrics instance (optional)
        """
        self.registry = registry
        self.metrics = metrics
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Plain-text health check.

        Returns:
            200 OK with body ``ok``
        """
        return web.Response(text="ok", content_type="text/plain")

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary endpoint.

        Returns:
            200 OK: Metrics summary in JSON format
        """
        summary: dict[str, Any] = {}
        if self.metrics is not None:
            summary["relay"] = self.metrics.get_summary()
        if self.registry is not None:
            summary["rooms"] = self.registry.get_summary()

        return web.json_response(
            {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "metrics": summary,
            },
            status=200,
        )


def setup_health_routes(
    app: web.Application,
    registry: RoomRegistry | None = None,
    metrics: RelayMetrics | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        registry: RoomRegistry instance (optional)
        metrics: RelayMetrics instance (optional)
    """
    handler = HealthCheckHandler(registry=registry, metrics=metrics)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info("Health check endpoints configured: /health, /liveness, /metrics/summary")
