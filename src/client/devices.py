"""sounddevice-backed capture provider.

PortAudio invokes the stream callback on its own thread; blocks are handed to
the event loop with ``call_soon_threadsafe``. Opening and closing the device
block, so they run in the default executor.
"""

import asyncio
import logging
from typing import Any

import numpy as np

from client.capture import (
    REASON_NO_DEVICE,
    REASON_PERMISSION_DENIED,
    CaptureError,
    CaptureProvider,
    CaptureStream,
    CaptureUnavailableError,
    InputDevice,
)

logger = logging.getLogger(__name__)


def _import_sounddevice() -> Any:
    """Import sounddevice, mapping a missing PortAudio to an unavailable device."""
    try:
        import sounddevice as sd
    except (ImportError, OSError) as e:
        raise CaptureUnavailableError(REASON_NO_DEVICE, f"Audio I/O not available: {e}") from e
    return sd


def _classify(error: Exception) -> str:
    text = str(error).lower()
    if "permission" in text or "denied" in text:
        return REASON_PERMISSION_DENIED
    return REASON_NO_DEVICE


class SoundDeviceStream(CaptureStream):
    """Running ``sounddevice.InputStream`` exposed as an async block source."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        device: int | str | None,
        sample_rate: int,
        channels: int,
        blocksize: int = 0,
    ) -> None:
        sd = _import_sounddevice()

        self._loop = loop
        self._sample_rate = sample_rate
        self._channels = channels
        self._queue: asyncio.Queue[np.ndarray | CaptureError] = asyncio.Queue()
        self._closing = False

        self._stream = sd.InputStream(
            device=device,
            samplerate=sample_rate,
            channels=channels,
            dtype="float32",
            blocksize=blocksize,
            callback=self._callback,
            finished_callback=self._finished,
        )

    @property
    def sample_rate(self) -> int:
        return self._sample_rate

    @property
    def channels(self) -> int:
        return self._channels

    def start(self) -> None:
        self._stream.start()

    def close(self) -> None:
        """Stop and close the PortAudio stream (blocking)."""
        self._closing = True
        try:
            self._stream.stop()
        finally:
            self._stream.close()

    async def read(self) -> np.ndarray:
        item = await self._queue.get()
        if isinstance(item, CaptureError):
            raise item
        return item

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.debug(f"Input stream status: {status}")
        self._loop.call_soon_threadsafe(self._queue.put_nowait, indata.copy())

    def _finished(self) -> None:
        if self._closing:
            return
        self._loop.call_soon_threadsafe(
            self._queue.put_nowait, CaptureError("Input device stopped unexpectedly")
        )


class SoundDeviceProvider(CaptureProvider):
    """Capture provider using the system audio devices via sounddevice."""

    def __init__(self, channels: int = 1, sample_rate: int | None = None) -> None:
        """Initialize provider.

        Args:
            channels: Requested channel count
            sample_rate: Requested sample rate (None = device default)
        """
        self.channels = channels
        self.sample_rate = sample_rate

    def enumerate_devices(self) -> list[InputDevice]:
        sd = _import_sounddevice()
        try:
            default_input = sd.default.device[0]
        except (TypeError, IndexError):
            default_input = None

        devices = []
        for index, info in enumerate(sd.query_devices()):
            if info["max_input_channels"] <= 0:
                continue
            devices.append(
                InputDevice(
                    index=index,
                    name=info["name"],
                    channels=info["max_input_channels"],
                    default_sample_rate=info["default_samplerate"],
                    is_default=index == default_input,
                )
            )
        return devices

    async def acquire(self, device: int | str | None = None) -> CaptureStream:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._open, loop, device)

    async def release(self, stream: CaptureStream) -> None:
        if not isinstance(stream, SoundDeviceStream):
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, stream.close)
        except Exception as e:
            logger.warning(f"Failed to close input device: {e}")
        logger.info("Input device released")

    def _open(self, loop: asyncio.AbstractEventLoop, device: int | str | None) -> SoundDeviceStream:
        sd = _import_sounddevice()
        try:
            info = sd.query_devices(device, kind="input")
            sample_rate = self.sample_rate or int(info["default_samplerate"])
            channels = min(self.channels, int(info["max_input_channels"])) or 1
            stream = SoundDeviceStream(loop, device, sample_rate, channels)
            stream.start()
        except (sd.PortAudioError, ValueError) as e:
            raise CaptureUnavailableError(_classify(e), f"Cannot open input device: {e}") from e

        logger.info(
            f"Input device acquired: {info['name']}",
            extra={"sample_rate": sample_rate, "channels": channels},
        )
        return stream
