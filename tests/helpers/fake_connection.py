"""In-memory Connection used by unit tests.

Records everything sent to it and yields whatever the test feeds it.
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

from common.transport import Connection


class FakeConnection(Connection):
    """Connection double recording sent frames."""

    def __init__(self, connection_id: str = "conn", is_open: bool = True) -> None:
        self._connection_id = connection_id
        self._open = is_open
        self.sent: list[str | bytes] = []
        self.fail_sends = False
        self.send_delay_s = 0.0
        self.closed = False
        self._inbound: asyncio.Queue[str | bytes | None] = asyncio.Queue()

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def remote_address(self) -> str:
        return "127.0.0.1:0"

    async def send_text(self, payload: str) -> None:
        await self._record(payload)

    async def send_bytes(self, payload: bytes) -> None:
        await self._record(payload)

    async def _record(self, payload: str | bytes) -> None:
        if self.send_delay_s:
            await asyncio.sleep(self.send_delay_s)
        if not self._open or self.fail_sends:
            raise ConnectionError("connection closed")
        self.sent.append(payload)

    async def receive(self) -> AsyncIterator[str | bytes]:
        while True:
            message = await self._inbound.get()
            if message is None:
                return
            yield message

    async def close(self) -> None:
        self._open = False
        self.closed = True
        self.finish()

    def feed(self, *messages: str | bytes) -> None:
        """Queue inbound messages for ``receive``."""
        for message in messages:
            self._inbound.put_nowait(message)

    def finish(self) -> None:
        """End the inbound stream (peer closed)."""
        self._inbound.put_nowait(None)

    def drop(self) -> None:
        """Mark the connection closed without ending the inbound stream."""
        self._open = False

    @property
    def texts(self) -> list[dict[str, Any]]:
        """Sent text frames decoded as JSON."""
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    @property
    def binaries(self) -> list[bytes]:
        return [m for m in self.sent if isinstance(m, bytes)]

    def clear(self) -> None:
        self.sent.clear()
