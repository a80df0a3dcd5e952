"""Sequential playback of received audio chunks.

Chunks arrive faster than they play. ``PlaybackQueue`` keeps them in a FIFO
drained by a single worker task, so chunk n+1 starts only after chunk n has
finished or failed. ``enqueue`` never blocks the receive loop.
"""

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from client.encoder import decode_chunk
from common.types import AudioChunk, MimeType

logger = logging.getLogger(__name__)


class DecodeOrPlaybackError(Exception):
    """Raised when a chunk cannot be decoded or played."""

    pass


class AudioPlayer(ABC):
    """Plays one encoded chunk to completion."""

    @abstractmethod
    async def play(self, chunk: AudioChunk, mime_hint: MimeType) -> None:
        """Decode and play a chunk, returning when playback has ended.

        Raises:
            DecodeOrPlaybackError: If the chunk cannot be decoded or played
        """
        pass


class SoundDevicePlayer(AudioPlayer):
    """Plays chunks through the system output device.

    Decoding uses soundfile; the container is detected from the chunk header,
    so the MIME hint is only used for diagnostics.
    """

    def __init__(self, device: int | str | None = None) -> None:
        """Initialize player.

        Args:
            device: Optional output device name/index
        """
        self.device = device
        self.sd: Any = None

    async def play(self, chunk: AudioChunk, mime_hint: MimeType) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._play_blocking, chunk, mime_hint)

    def _play_blocking(self, chunk: bytes, mime_hint: str) -> None:
        try:
            samples, sample_rate = decode_chunk(chunk)
        except Exception as e:
            raise DecodeOrPlaybackError(f"Cannot decode {mime_hint} chunk: {e}") from e

        if self.sd is None:
            try:
                import sounddevice as sd
            except (ImportError, OSError) as e:
                raise DecodeOrPlaybackError(f"Audio output not available: {e}") from e
            self.sd = sd
            logger.info(f"Audio output initialized (device: {self.device or 'default'})")

        try:
            self.sd.play(samples, samplerate=sample_rate, device=self.device, blocking=True)
        except Exception as e:
            raise DecodeOrPlaybackError(f"Audio playback failed: {e}") from e


@dataclass
class PlaybackStats:
    """Playback queue statistics."""

    played: int = 0
    skipped: int = 0
    dropped: int = 0
    last_chunk_bytes: int = 0
    last_chunk_at: float | None = None

    def get_summary(self) -> dict[str, Any]:
        return {
            "played": self.played,
            "skipped": self.skipped,
            "dropped": self.dropped,
            "last_chunk_bytes": self.last_chunk_bytes,
            "last_chunk_at": self.last_chunk_at,
        }


class PlaybackQueue:
    """FIFO of received chunks played one at a time.

    Example:
        ```python
        queue = PlaybackQueue(SoundDevicePlayer())
        queue.enqueue(chunk, "audio/wav")   # returns immediately
        await queue.drain()                 # waits until everything played
        await queue.close()
        ```

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(self, player: AudioPlayer, max_backlog: int | None = None) -> None:
        """Initialize playback queue.

        Args:
            player: Player used for every chunk
            max_backlog: Drop the oldest waiting chunks beyond this (None = unbounded)

        Raises:
            ValueError: If max_backlog is less than 1
        """
        if max_backlog is not None and max_backlog < 1:
            raise ValueError(f"max_backlog must be at least 1, got {max_backlog}")

        self.player = player
        self.max_backlog = max_backlog
        self.stats = PlaybackStats()
        self._queue: asyncio.Queue[tuple[bytes, str]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        """Chunks waiting to be played (excluding the one playing)."""
        return self._queue.qsize()

    def enqueue(self, chunk: AudioChunk, mime_hint: MimeType) -> None:
        """Schedule a chunk for playback after every earlier chunk.

        Args:
            chunk: Encoded audio bytes
            mime_hint: Container/codec the sender announced
        """
        if self._closed:
            logger.debug("Chunk ignored, playback queue closed")
            return

        self.stats.last_chunk_bytes = len(chunk)
        self.stats.last_chunk_at = time.time()

        if self.max_backlog is not None:
            while self._queue.qsize() >= self.max_backlog:
                self._queue.get_nowait()
                self._queue.task_done()
                self.stats.dropped += 1
                logger.debug("Playback backlog full, dropped oldest chunk")

        self._queue.put_nowait((chunk, mime_hint))

        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def drain(self) -> None:
        """Wait until every queued chunk has been played or skipped."""
        await self._queue.join()

    async def close(self) -> None:
        """Stop the worker, discarding chunks not yet played."""
        self._closed = True
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None

    async def _run(self) -> None:
        while True:
            chunk, mime_hint = await self._queue.get()
            try:
                await self.player.play(chunk, mime_hint)
                self.stats.played += 1
            except asyncio.CancelledError:
                raise
            except DecodeOrPlaybackError as e:
                self.stats.skipped += 1
                logger.warning(f"Skipping chunk: {e}", extra={"size": len(chunk)})
            except Exception:
                self.stats.skipped += 1
                logger.exception("Unexpected playback error", extra={"size": len(chunk)})
            finally:
                self._queue.task_done()
