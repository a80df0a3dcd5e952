"""Unit tests for the relay health endpoints."""

from collections.abc import AsyncIterator

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from relay.health import setup_health_routes
from relay.metrics import RelayMetrics
from relay.rooms import RoomRegistry
from tests.helpers.fake_connection import FakeConnection


@pytest.fixture
async def health_client() -> AsyncIterator[TestClient]:
    registry = RoomRegistry()
    metrics = RelayMetrics()
    await registry.join(FakeConnection("a"), "abc")
    metrics.record_connection_opened()

    app = web.Application()
    setup_health_routes(app, registry, metrics)

    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()


@pytest.mark.asyncio
async def test_health_returns_ok(health_client: TestClient) -> None:
    """Test /health returns plain ok."""
    response = await health_client.get("/health")
    assert response.status == 200
    assert await response.text() == "ok"


@pytest.mark.asyncio
async def test_liveness(health_client: TestClient) -> None:
    """Test /liveness reports uptime."""
    response = await health_client.get("/liveness")
    assert response.status == 200
    data = await response.json()
    assert data["status"] == "alive"
    assert data["uptime_seconds"] >= 0


@pytest.mark.asyncio
async def test_metrics_summary(health_client: TestClient) -> None:
    """Test /metrics/summary includes relay and room metrics."""
    response = await health_client.get("/metrics/summary")
    assert response.status == 200
    data = await response.json()
    assert data["metrics"]["rooms"] == {"rooms": 1, "members": 1, "full_rooms": 0}
    assert data["metrics"]["relay"]["connections_opened"] == 1
