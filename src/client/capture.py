"""Microphone capture pipeline.

Owns the push-to-talk state machine: acquires an input device, announces the
stream with one ``audio-config`` message, then emits one encoded chunk per
time slice over the relay channel until stopped.

State Transitions:
- IDLE → ACQUIRING (on start)
- ACQUIRING → STREAMING (device granted)
- ACQUIRING → IDLE (device denied, start cancelled, or stop requested before grant)
- STREAMING → STOPPING (on stop)
- STREAMING → IDLE (device failure)
- STOPPING → IDLE (final chunk flushed, device released)
"""

import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Final

import numpy as np

from client.encoder import ChunkEncoder, UnsupportedFormatError, supported_mime_types
from common.protocol import AudioConfigMessage, serialize
from common.transport import DEFAULT_SEND_TIMEOUT_S, Connection, send_safely

logger = logging.getLogger(__name__)

# Reasons carried by CaptureUnavailableError
REASON_PERMISSION_DENIED: Final[str] = "permission-denied"
REASON_NO_DEVICE: Final[str] = "no-device"
REASON_UNSUPPORTED_FORMAT: Final[str] = "unsupported-format"


class CaptureState(Enum):
    """Capture pipeline states."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    STREAMING = "streaming"
    STOPPING = "stopping"


VALID_TRANSITIONS: dict[CaptureState, set[CaptureState]] = {
    CaptureState.IDLE: {CaptureState.ACQUIRING},
    CaptureState.ACQUIRING: {CaptureState.STREAMING, CaptureState.IDLE},
    CaptureState.STREAMING: {CaptureState.STOPPING, CaptureState.IDLE},
    CaptureState.STOPPING: {CaptureState.IDLE},
}


class CaptureFailure(Exception):
    """Base class for capture pipeline failures."""

    pass


class PreconditionFailedError(CaptureFailure):
    """Raised when capture cannot start in the current environment."""

    pass


class TransportUnavailableError(PreconditionFailedError):
    """Raised when capture is started without an open relay channel."""

    pass


class CaptureUnavailableError(CaptureFailure):
    """Raised when the input device cannot be acquired."""

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class CaptureError(CaptureFailure):
    """Raised by a capture stream when the device fails mid-stream."""

    pass


@dataclass(frozen=True)
class InputDevice:
    """Audio input device description."""

    index: int
    name: str
    channels: int
    default_sample_rate: float
    is_default: bool = False


class CaptureStream(ABC):
    """An acquired input device producing float32 sample blocks."""

    @property
    @abstractmethod
    def sample_rate(self) -> int:
        """Sample rate in Hz."""
        pass

    @property
    @abstractmethod
    def channels(self) -> int:
        """Channel count."""
        pass

    @abstractmethod
    async def read(self) -> np.ndarray:
        """Wait for the next captured block.

        Returns:
            Float32 array shaped (frames, channels)

        Raises:
            CaptureError: If the device failed
        """
        pass


class CaptureProvider(ABC):
    """Source of input devices."""

    @abstractmethod
    def enumerate_devices(self) -> list[InputDevice]:
        """List available input devices."""
        pass

    @abstractmethod
    async def acquire(self, device: int | str | None = None) -> CaptureStream:
        """Open an input device and start capturing.

        Args:
            device: Device index or name (None = system default)

        Raises:
            CaptureUnavailableError: If the device cannot be opened
        """
        pass

    @abstractmethod
    async def release(self, stream: CaptureStream) -> None:
        """Stop capturing and release the device. Must not raise."""
        pass


@dataclass
class CaptureSettings:
    """User-selectable capture settings."""

    mime_type: str | None = None
    time_slice_ms: int = 250
    device: int | str | None = None


@dataclass
class TransmitStats:
    """Outgoing chunk statistics."""

    chunks_sent: int = 0
    bytes_sent: int = 0
    chunks_dropped: int = 0
    last_chunk_bytes: int = 0
    last_chunk_at: float | None = None

    def get_summary(self) -> dict[str, Any]:
        return {
            "chunks_sent": self.chunks_sent,
            "bytes_sent": self.bytes_sent,
            "chunks_dropped": self.chunks_dropped,
            "last_chunk_bytes": self.last_chunk_bytes,
            "last_chunk_at": self.last_chunk_at,
        }


EncoderFactory = Callable[[str, int, int], ChunkEncoder]


class CapturePipeline:
    """Push-to-talk capture pipeline.

    The device is held for the whole STREAMING/STOPPING duration and is
    released on every exit path before the state returns to IDLE.

    Example:
        ```python
        pipeline = CapturePipeline(channel, SoundDeviceProvider())
        await pipeline.start()   # ACQUIRING → STREAMING
        ...
        await pipeline.stop()    # final chunk flushed, back to IDLE
        ```

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        channel: Connection,
        provider: CaptureProvider,
        settings: CaptureSettings | None = None,
        supported_formats: list[str] | None = None,
        encoder_factory: EncoderFactory = ChunkEncoder,
        on_error: Callable[[CaptureError], None] | None = None,
        on_state_change: Callable[[CaptureState], None] | None = None,
        send_timeout_s: float = DEFAULT_SEND_TIMEOUT_S,
    ) -> None:
        """Initialize capture pipeline.

        Args:
            channel: Relay connection chunks are sent over
            provider: Input device provider
            settings: Capture settings (defaults apply if None)
            supported_formats: Encodable MIME types (probed from soundfile if None)
            encoder_factory: Builds the chunk encoder for a granted device
            on_error: Called when the device fails mid-stream
            on_state_change: Called after every state transition
            send_timeout_s: Per-chunk send timeout
        """
        self.channel = channel
        self.provider = provider
        self.settings = settings or CaptureSettings()
        self._supported_formats = supported_formats
        self._encoder_factory = encoder_factory
        self._on_error = on_error
        self._on_state_change = on_state_change
        self._send_timeout_s = send_timeout_s

        self._state = CaptureState.IDLE
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        self._pump_task: asyncio.Task[None] | None = None
        self._release_tasks: set[asyncio.Future[None]] = set()
        self._last_error: CaptureFailure | None = None
        self.stats = TransmitStats()

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def last_error(self) -> CaptureFailure | None:
        """Most recent failure, cleared on the next start."""
        return self._last_error

    @property
    def supported_formats(self) -> list[str]:
        if self._supported_formats is None:
            self._supported_formats = supported_mime_types()
        return self._supported_formats

    def select_format(self) -> str | None:
        """Preferred format if supported, else the first supported candidate."""
        formats = self.supported_formats
        if self.settings.mime_type in formats:
            return self.settings.mime_type
        return formats[0] if formats else None

    async def start(self, device: int | str | None = None) -> bool:
        """Acquire the input device and begin streaming.

        No-op unless IDLE.

        Args:
            device: Device index or name (defaults to the configured device)

        Returns:
            True if streaming started, False otherwise

        Raises:
            TransportUnavailableError: If the relay channel is not open
            PreconditionFailedError: If no recording format is supported
            CaptureUnavailableError: If the device was denied or could not be opened
        """
        if self._state is not CaptureState.IDLE:
            logger.debug("Capture start ignored", extra={"state": self._state.value})
            return False

        if not self.channel.is_open:
            raise TransportUnavailableError("Not connected to the relay")

        mime_type = self.select_format()
        if mime_type is None:
            raise PreconditionFailedError("No supported recording format")

        self._last_error = None
        self._stop_requested = False
        self._transition(CaptureState.ACQUIRING)

        acquire = asyncio.ensure_future(
            self.provider.acquire(device if device is not None else self.settings.device)
        )
        try:
            stream = await asyncio.shield(acquire)
        except asyncio.CancelledError:
            # A device granted after cancellation is released as soon as it resolves
            acquire.add_done_callback(self._release_abandoned)
            self._transition(CaptureState.IDLE)
            logger.info("Capture start cancelled while acquiring")
            raise
        except CaptureUnavailableError as e:
            self._last_error = e
            self._transition(CaptureState.IDLE)
            logger.warning("Capture device unavailable", extra={"reason": e.reason})
            raise
        except Exception as e:
            error = CaptureUnavailableError(REASON_NO_DEVICE, f"Could not open input device: {e}")
            self._last_error = error
            self._transition(CaptureState.IDLE)
            logger.warning("Capture device unavailable", extra={"reason": error.reason})
            raise error from e

        if self._stop_requested:
            await self.provider.release(stream)
            self._transition(CaptureState.IDLE)
            logger.info("Capture stopped before device was granted")
            return False

        try:
            encoder = self._encoder_factory(mime_type, stream.sample_rate, stream.channels)
        except UnsupportedFormatError as e:
            await self.provider.release(stream)
            error = CaptureUnavailableError(REASON_UNSUPPORTED_FORMAT, str(e))
            self._last_error = error
            self._transition(CaptureState.IDLE)
            raise error from e

        config = AudioConfigMessage(
            mime_type=mime_type,
            sample_rate=stream.sample_rate,
            channels=stream.channels,
            time_slice_ms=self.settings.time_slice_ms,
        )

        self._stop_event = asyncio.Event()
        self._transition(CaptureState.STREAMING)
        self._pump_task = asyncio.create_task(self._pump(stream, encoder, config))
        return True

    async def stop(self) -> None:
        """Stop streaming, flushing the final chunk. No-op when IDLE."""
        if self._state is CaptureState.ACQUIRING:
            self._stop_requested = True
            return

        if self._state is not CaptureState.STREAMING:
            return

        self._transition(CaptureState.STOPPING)
        self._stop_event.set()
        if self._pump_task is not None:
            await self._pump_task

    async def close(self) -> None:
        """Stop streaming and cancel the pump if it does not finish."""
        if self._state is CaptureState.ACQUIRING:
            self._stop_requested = True
        elif self._state is CaptureState.STREAMING:
            self._transition(CaptureState.STOPPING)
            self._stop_event.set()

        task = self._pump_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(task, timeout=self._send_timeout_s)
            except TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _pump(
        self, stream: CaptureStream, encoder: ChunkEncoder, config: AudioConfigMessage
    ) -> None:
        """Send the audio config, then encode captured blocks until stopped."""
        error: CaptureError | None = None

        try:
            await send_safely(self.channel, serialize(config), self._send_timeout_s)
            encoder.start(self.settings.time_slice_ms, self._send_chunk)
            logger.info(
                "Capture streaming",
                extra={
                    "mime_type": config.mime_type,
                    "sample_rate": config.sample_rate,
                    "channels": config.channels,
                    "time_slice_ms": config.time_slice_ms,
                },
            )

            stop_wait = asyncio.ensure_future(self._stop_event.wait())
            try:
                while not stop_wait.done():
                    read_task = asyncio.ensure_future(stream.read())
                    await asyncio.wait(
                        {read_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if not read_task.done():
                        read_task.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await read_task
                        break
                    await encoder.write(read_task.result())
            finally:
                stop_wait.cancel()

            await encoder.stop()
        except CaptureError as e:
            encoder.discard()
            error = e
        except asyncio.CancelledError:
            encoder.discard()
            raise
        except Exception as e:
            logger.exception("Capture pipeline failed")
            encoder.discard()
            error = CaptureError(f"Capture failed: {e}")
        finally:
            await self.provider.release(stream)
            if error is not None:
                self._last_error = error
            self._transition(CaptureState.IDLE)

        if error is not None:
            logger.error("Capture device failed", extra={"error": str(error)})
            if self._on_error is not None:
                self._on_error(error)

    def _release_abandoned(self, acquire: asyncio.Future[CaptureStream]) -> None:
        """Release a device whose acquisition outlived a cancelled start."""
        if acquire.cancelled() or acquire.exception() is not None:
            return

        task = asyncio.ensure_future(self.provider.release(acquire.result()))
        self._release_tasks.add(task)
        task.add_done_callback(self._release_tasks.discard)
        logger.info("Released input device granted after cancelled start")

    async def _send_chunk(self, chunk: bytes) -> None:
        if not await send_safely(self.channel, chunk, self._send_timeout_s):
            self.stats.chunks_dropped += 1
            logger.debug("Chunk dropped", extra={"size": len(chunk)})
            return

        self.stats.chunks_sent += 1
        self.stats.bytes_sent += len(chunk)
        self.stats.last_chunk_bytes = len(chunk)
        self.stats.last_chunk_at = time.time()

    def _transition(self, new_state: CaptureState) -> None:
        """Transition to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self._state, set()):
            raise ValueError(f"Invalid state transition: {self._state.value} → {new_state.value}")

        old_state = self._state
        self._state = new_state
        logger.debug(
            "Capture state transition",
            extra={"from_state": old_state.value, "to_state": new_state.value},
        )
        if self._on_state_change is not None:
            self._on_state_change(new_state)
