"""End-to-end relay tests over real loopback WebSockets.

Tests the complete flow:
1. Start the relay on an ephemeral port
2. Connect peers with the client channel
3. Pair two peers in a room, turn a third away
4. Relay binary and text frames unmodified and in order
5. Notify the remaining peer when the other disconnects
"""

import asyncio
import contextlib
import json
import logging
import os
from collections.abc import AsyncIterator
from typing import Any

import aiohttp
import pytest
import pytest_asyncio

from client.capture import CapturePipeline, CaptureSettings
from client.channel import open_channel
from client.encoder import decode_chunk
from common.protocol import AudioConfigMessage, JoinMessage, LeaveMessage, serialize
from common.websocket import WebSocketConnection
from relay.config import HealthConfig, RelayConfig, WebSocketConfig
from relay.server import RelayServer
from tests.helpers.fake_audio import FakeProvider, tone
from tests.helpers.waiting import wait_until

logger = logging.getLogger(__name__)

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


class Peer:
    """Test peer reading its channel on a background task."""

    def __init__(self, connection: WebSocketConnection) -> None:
        self.connection = connection
        self.inbox: asyncio.Queue[str | bytes] = asyncio.Queue()
        self._reader = asyncio.create_task(self._read())

    async def _read(self) -> None:
        with contextlib.suppress(ConnectionError):
            async for message in self.connection.receive():
                await self.inbox.put(message)

    async def recv(self, timeout_s: float = 2.0) -> str | bytes:
        return await asyncio.wait_for(self.inbox.get(), timeout=timeout_s)

    async def recv_json(self, timeout_s: float = 2.0) -> dict[str, Any]:
        message = await self.recv(timeout_s)
        assert isinstance(message, str), f"expected text frame, got {type(message)}"
        return json.loads(message)

    async def send(self, payload: str | bytes) -> None:
        if isinstance(payload, bytes):
            await self.connection.send_bytes(payload)
        else:
            await self.connection.send_text(payload)

    async def join(self, room: str) -> None:
        await self.send(serialize(JoinMessage(room=room)))

    async def close(self) -> None:
        await self.connection.close()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.wait_for(self._reader, timeout=2.0)


@pytest_asyncio.fixture
async def relay_server() -> AsyncIterator[RelayServer]:
    """Relay bound to ephemeral loopback ports."""
    config = RelayConfig(
        websocket=WebSocketConfig(host="127.0.0.1", port=0, send_timeout_s=2.0),
        health=HealthConfig(host="127.0.0.1", port=0),
        graceful_shutdown_timeout_s=2,
    )
    server = RelayServer(config)
    await server.start()
    yield server
    await server.stop()


@pytest_asyncio.fixture
async def connect(relay_server: RelayServer) -> AsyncIterator[Any]:
    """Factory opening peers against the running relay."""
    peers: list[Peer] = []

    async def _connect() -> Peer:
        connection = await open_channel(f"ws://127.0.0.1:{relay_server.port}/ws")
        peer = Peer(connection)
        peers.append(peer)
        return peer

    yield _connect

    for peer in peers:
        await peer.close()


def room_state(room: str, count: int) -> dict[str, Any]:
    return {"type": "room-state", "room": room, "count": count, "limit": 2}


async def test_pairing_and_relay_scenario(connect: Any) -> None:
    """A and B pair in "abc", C is rejected, A's 4096-byte frame reaches only B."""
    a, b, c = await connect(), await connect(), await connect()

    await a.join("abc")
    assert await a.recv_json() == room_state("abc", 1)

    await b.join("abc")
    assert await a.recv_json() == room_state("abc", 2)
    assert await b.recv_json() == room_state("abc", 2)

    await c.join("abc")
    error = await c.recv_json()
    assert error["type"] == "error"
    assert error["code"] == "room-full"

    payload = os.urandom(4096)
    await a.send(payload)

    assert await b.recv() == payload
    await asyncio.sleep(0.2)
    assert a.inbox.empty()
    assert c.inbox.empty()


async def test_disconnect_notifies_remaining_peer(
    connect: Any, relay_server: RelayServer
) -> None:
    """Closing one side leaves the room and tells the other."""
    a, b = await connect(), await connect()
    await a.join("pair")
    await a.recv_json()
    await b.join("pair")
    await a.recv_json()
    await b.recv_json()

    await b.close()

    assert await a.recv_json() == room_state("pair", 1)
    await wait_until(lambda: relay_server.metrics.active_connections == 1)


async def test_leave_then_rejoin(connect: Any) -> None:
    """Leaving frees the slot for a third peer."""
    a, b, c = await connect(), await connect(), await connect()
    await a.join("x")
    await a.recv_json()
    await b.join("x")
    await a.recv_json()
    await b.recv_json()

    await b.send(serialize(LeaveMessage()))
    assert await a.recv_json() == room_state("x", 1)

    await c.join("x")
    assert await c.recv_json() == room_state("x", 2)
    assert await a.recv_json() == room_state("x", 2)


async def test_config_and_chunks_relayed_in_order(connect: Any) -> None:
    """audio-config text and binary chunks arrive verbatim and in order."""
    a, b = await connect(), await connect()
    await a.join("ordered")
    await a.recv_json()
    await b.join("ordered")
    await a.recv_json()
    await b.recv_json()

    config = serialize(AudioConfigMessage(mime_type="audio/wav", sample_rate=8000, channels=1))
    chunks = [bytes([i]) * (512 + i) for i in range(20)]

    await a.send(config)
    for chunk in chunks:
        await a.send(chunk)

    assert await b.recv() == config
    received = [await b.recv() for _ in chunks]
    assert received == chunks


async def test_capture_pipeline_over_relay(connect: Any) -> None:
    """A capture pipeline on one peer streams decodable chunks to the other."""
    a, b = await connect(), await connect()
    await a.join("talk")
    await a.recv_json()
    await b.join("talk")
    await a.recv_json()
    await b.recv_json()

    provider = FakeProvider()
    pipeline = CapturePipeline(
        a.connection,
        provider,
        CaptureSettings(mime_type="audio/wav", time_slice_ms=100),
        supported_formats=["audio/wav"],
    )
    assert await pipeline.start() is True
    provider.stream.push(tone(800))
    provider.stream.push(tone(300))
    await wait_until(lambda: pipeline.stats.chunks_sent == 1)
    await asyncio.sleep(0.05)
    await pipeline.stop()

    config = await b.recv_json()
    assert config["type"] == "audio-config"
    assert config["mimeType"] == "audio/wav"
    assert config["timeSliceMs"] == 100

    first, second = await b.recv(), await b.recv()
    assert isinstance(first, bytes)
    assert isinstance(second, bytes)
    assert len(decode_chunk(first)[0]) == 800
    assert len(decode_chunk(second)[0]) == 300


async def test_http_endpoints(relay_server: RelayServer) -> None:
    """Plain HTTP on the WebSocket port and the health server both answer."""
    async with aiohttp.ClientSession() as session:
        async with session.get(f"http://127.0.0.1:{relay_server.port}/health") as response:
            assert response.status == 200
            assert (await response.text()).strip() == "ok"

        async with session.get(f"http://127.0.0.1:{relay_server.port}/nope") as response:
            assert response.status == 404

        health_port = relay_server.health_port
        assert health_port is not None
        url = f"http://127.0.0.1:{health_port}/metrics/summary"
        async with session.get(url) as response:
            assert response.status == 200
            data = await response.json()
            assert "relay" in data["metrics"]
            assert "rooms" in data["metrics"]
