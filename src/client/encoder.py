"""Chunked audio encoding for the capture pipeline.

Captured float32 blocks are accumulated until one chunk interval worth of
frames is buffered, then encoded into a self-contained container (WAV, FLAC or
Ogg/Vorbis via soundfile) and handed to the chunk callback.

Every chunk carries its own header, so the receiver can decode each one on
its own; chunks must still be played in order to reconstruct the stream.
"""

import asyncio
import io
import logging
from collections.abc import Awaitable, Callable
from typing import Final

import numpy as np
import soundfile as sf

logger = logging.getLogger(__name__)

# Preference order, most compact first
FORMAT_CANDIDATES: Final[tuple[str, ...]] = (
    "audio/ogg;codecs=vorbis",
    "audio/flac",
    "audio/wav",
)

# MIME type → (soundfile format, subtype)
_SOUNDFILE_FORMATS: Final[dict[str, tuple[str, str]]] = {
    "audio/ogg;codecs=vorbis": ("OGG", "VORBIS"),
    "audio/flac": ("FLAC", "PCM_16"),
    "audio/wav": ("WAV", "PCM_16"),
}

ChunkCallback = Callable[[bytes], Awaitable[None]]


class UnsupportedFormatError(ValueError):
    """Raised when a MIME type cannot be encoded by this build of libsndfile."""

    pass


def supported_mime_types() -> list[str]:
    """Recording formats available locally, in preference order."""
    return [
        mime_type
        for mime_type in FORMAT_CANDIDATES
        if sf.check_format(*_SOUNDFILE_FORMATS[mime_type])
    ]


def encode_chunk(samples: np.ndarray, sample_rate: int, mime_type: str) -> bytes:
    """Encode a block of samples as one self-contained chunk.

    Args:
        samples: Float32 array shaped (frames, channels)
        sample_rate: Sample rate in Hz
        mime_type: Target container

    Returns:
        Encoded bytes

    Raises:
        UnsupportedFormatError: If the MIME type is unknown
    """
    try:
        container, subtype = _SOUNDFILE_FORMATS[mime_type]
    except KeyError as e:
        raise UnsupportedFormatError(f"Unsupported recording format: {mime_type}") from e

    buffer = io.BytesIO()
    sf.write(buffer, samples, sample_rate, format=container, subtype=subtype)
    return buffer.getvalue()


def decode_chunk(data: bytes) -> tuple[np.ndarray, int]:
    """Decode one chunk into float32 samples.

    The container is detected from the chunk header.

    Returns:
        Tuple of (samples shaped (frames, channels), sample rate)

    Raises:
        RuntimeError: If libsndfile cannot parse the data
    """
    samples, sample_rate = sf.read(io.BytesIO(data), dtype="float32", always_2d=True)
    return samples, int(sample_rate)


class ChunkEncoder:
    """Accumulates captured blocks and emits one encoded chunk per interval.

    Example:
        ```python
        encoder = ChunkEncoder("audio/wav", sample_rate=48000, channels=1)
        encoder.start(250, send_chunk)
        await encoder.write(block)   # emits whenever 250ms is buffered
        await encoder.stop()         # flushes the remainder as a final chunk
        ```
    """

    def __init__(self, mime_type: str, sample_rate: int, channels: int) -> None:
        """Initialize encoder.

        Args:
            mime_type: Target container
            sample_rate: Input sample rate in Hz
            channels: Input channel count

        Raises:
            UnsupportedFormatError: If the MIME type is unknown
        """
        if mime_type not in _SOUNDFILE_FORMATS:
            raise UnsupportedFormatError(f"Unsupported recording format: {mime_type}")

        self.mime_type = mime_type
        self.sample_rate = sample_rate
        self.channels = channels

        self._on_chunk: ChunkCallback | None = None
        self._frames_per_chunk = 0
        self._blocks: list[np.ndarray] = []
        self._buffered_frames = 0

    def start(self, time_slice_ms: int, on_chunk: ChunkCallback) -> None:
        """Begin emitting chunks every ``time_slice_ms`` of captured audio."""
        self._frames_per_chunk = max(1, self.sample_rate * time_slice_ms // 1000)
        self._on_chunk = on_chunk
        self._blocks = []
        self._buffered_frames = 0

    async def write(self, block: np.ndarray) -> None:
        """Append a captured block, emitting every complete chunk.

        Raises:
            RuntimeError: If the encoder was not started
        """
        if self._on_chunk is None:
            raise RuntimeError("Encoder is not started")

        if block.ndim == 1:
            block = block.reshape(-1, 1)
        self._blocks.append(block)
        self._buffered_frames += len(block)

        while self._buffered_frames >= self._frames_per_chunk:
            buffered = np.concatenate(self._blocks)
            chunk_samples = buffered[: self._frames_per_chunk]
            remainder = buffered[self._frames_per_chunk :]
            self._blocks = [remainder] if len(remainder) else []
            self._buffered_frames = len(remainder)
            await self._emit(chunk_samples)

    async def stop(self) -> None:
        """Flush any buffered audio as a final chunk and stop."""
        if self._on_chunk is not None and self._buffered_frames > 0:
            await self._emit(np.concatenate(self._blocks))
        self.discard()
        self._on_chunk = None

    def discard(self) -> None:
        """Drop buffered audio without emitting it."""
        self._blocks = []
        self._buffered_frames = 0

    async def _emit(self, samples: np.ndarray) -> None:
        loop = asyncio.get_running_loop()
        chunk = await loop.run_in_executor(
            None, encode_chunk, samples, self.sample_rate, self.mime_type
        )
        logger.debug(
            "Chunk encoded",
            extra={"frames": len(samples), "size": len(chunk), "mime_type": self.mime_type},
        )
        if self._on_chunk is not None:
            await self._on_chunk(chunk)
