"""Walkie-talkie CLI client.

Connects to the relay, joins a room, and toggles microphone transmission from
the keyboard while playing the peer's audio in arrival order.
"""

import argparse
import asyncio
import logging
import signal
import sys
from collections import deque

from pydantic import ValidationError

from client.capture import (
    CaptureError,
    CaptureFailure,
    CapturePipeline,
    CaptureProvider,
    CaptureSettings,
    CaptureState,
    CaptureUnavailableError,
)
from client.channel import open_channel
from client.config import DEFAULT_MIME_TYPE, ClientConfig, clamp_time_slice
from client.devices import SoundDeviceProvider
from client.playback import AudioPlayer, PlaybackQueue, SoundDevicePlayer
from common.protocol import (
    AudioConfigMessage,
    ErrorCode,
    ErrorMessage,
    JoinMessage,
    LeaveMessage,
    RoomStateMessage,
    parse_control,
    serialize,
)
from common.transport import Connection, send_safely
from common.types import InboundMessage

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /join <room>   - Join a room (max 2 people)
  /leave         - Leave the current room
  /talk          - Start/stop transmitting (or press Enter on an empty line)
  /devices       - List input devices
  /device <id>   - Select input device by index or name
  /formats       - List supported recording formats
  /format <mime> - Select recording format
  /slice <ms>    - Set chunk interval (min 50ms)
  /stats         - Show transmit/receive statistics
  /log           - Show recent activity
  /help          - Show this help
  /quit          - Exit client
"""


class WalkieTalkieClient:
    """Interactive walkie-talkie client."""

    def __init__(
        self,
        config: ClientConfig,
        provider: CaptureProvider | None = None,
        player: AudioPlayer | None = None,
    ) -> None:
        """Initialize client.

        Args:
            config: Client configuration
            provider: Input device provider (sounddevice if None)
            player: Output player (sounddevice if None)
        """
        self.config = config
        self.provider = provider or SoundDeviceProvider()
        self.settings = CaptureSettings(
            mime_type=config.mime_type,
            time_slice_ms=config.time_slice_ms,
            device=config.device,
        )
        self.playback = PlaybackQueue(
            player or SoundDevicePlayer(device=config.output_device),
            max_backlog=config.max_playback_backlog,
        )

        self.channel: Connection | None = None
        self.capture: CapturePipeline | None = None
        self.room: str | None = None
        self.room_count = 0
        self.incoming_config: AudioConfigMessage | None = None
        self.activity: deque[str] = deque(maxlen=8)
        self.running = True

    def attach(self, channel: Connection) -> None:
        """Bind the client to an open relay channel."""
        self.channel = channel
        self.capture = CapturePipeline(
            channel,
            self.provider,
            self.settings,
            on_error=self._on_capture_error,
            on_state_change=self._on_capture_state,
        )

    def log_activity(self, text: str) -> None:
        self.activity.append(text)
        print(f"\n* {text}")

    @property
    def playback_mime_type(self) -> str:
        """MIME type assumed for incoming chunks.

        The peer's most recent ``audio-config`` wins, then the locally selected
        format, then WAV.
        """
        if self.incoming_config is not None and self.incoming_config.mime_type:
            return self.incoming_config.mime_type
        if self.capture is not None:
            selected = self.capture.select_format()
            if selected:
                return selected
        return DEFAULT_MIME_TYPE

    async def send_control(self, text: str) -> bool:
        if self.channel is None:
            print("Not connected")
            return False
        return await send_safely(self.channel, text)

    async def join(self, room: str) -> None:
        room = room.strip()
        if not room:
            print("Usage: /join <room>")
            return
        if await self.send_control(serialize(JoinMessage(room=room))):
            logger.debug(f"Join requested: {room}")

    async def leave(self) -> None:
        if self.capture is not None:
            await self.capture.stop()
        if await self.send_control(serialize(LeaveMessage())):
            if self.room is not None:
                self.log_activity(f"Left room {self.room}")
            self.room = None
            self.room_count = 0
            self.incoming_config = None

    async def toggle_talk(self) -> None:
        """Start transmitting when idle, stop when streaming."""
        if self.capture is None:
            print("Not connected")
            return

        if self.capture.state is CaptureState.IDLE:
            if self.room is None:
                print("Join a room first; audio sent outside a room is dropped")
            try:
                if await self.capture.start():
                    self.log_activity("Recording started")
            except CaptureUnavailableError as e:
                self.log_activity(f"Microphone access failed ({e.reason}): {e}")
            except CaptureFailure as e:
                self.log_activity(f"Cannot start recording: {e}")
        else:
            await self.capture.stop()
            self.log_activity("Recording stopped")

    async def handle_message(self, message: InboundMessage) -> None:
        """Handle one inbound relay message.

        Args:
            message: Text (JSON control) or binary (audio chunk)
        """
        if isinstance(message, bytes):
            self.playback.enqueue(message, self.playback_mime_type)
            if self.config.verbose:
                logger.debug(f"Received chunk ({len(message)} bytes)")
            else:
                print(".", end="", flush=True)
            return

        data = parse_control(message)
        if data is None:
            logger.warning("Received non-JSON message")
            self.activity.append("Received non-JSON message")
            return

        msg_type = data.get("type")
        try:
            if msg_type == "room-state":
                state = RoomStateMessage.model_validate(data)
                if state.room != self.room or state.count < self.room_count:
                    # The peer whose format was announced is gone
                    self.incoming_config = None
                self.room = state.room
                self.room_count = state.count
                self.log_activity(f"Room {state.room}: {state.count}/{state.limit}")

            elif msg_type == "error":
                error = ErrorMessage.model_validate(data)
                if error.code == ErrorCode.ROOM_FULL:
                    self.room = None
                    self.room_count = 0
                    self.incoming_config = None
                logger.error(f"Server error [{error.code}]: {error.message}")
                self.log_activity(f"Error: {error.message}")

            elif msg_type == "audio-config":
                self.incoming_config = AudioConfigMessage.model_validate(data)
                self.log_activity(f"Incoming format: {self.incoming_config.mime_type}")

            else:
                logger.debug(f"Ignoring message type: {msg_type}")

        except ValidationError as e:
            logger.warning(f"Invalid {msg_type} message: {e}")

    async def handle_command(self, line: str) -> bool:
        """Execute one line of user input.

        Args:
            line: Raw input line

        Returns:
            False when the client should exit
        """
        text = line.strip()
        if not text:
            await self.toggle_talk()
            return True

        if not text.startswith("/"):
            print("Type /help for available commands")
            return True

        command, _, arg = text[1:].partition(" ")
        command = command.lower()
        arg = arg.strip()

        if command == "quit":
            return False

        elif command == "help":
            print(HELP_TEXT)

        elif command == "join":
            await self.join(arg)

        elif command == "leave":
            await self.leave()

        elif command == "talk":
            await self.toggle_talk()

        elif command == "devices":
            self._print_devices()

        elif command == "device":
            if not arg:
                print("Usage: /device <index|name>")
            else:
                self.settings.device = int(arg) if arg.isdigit() else arg
                print(f"Input device: {self.settings.device}")

        elif command == "formats":
            self._print_formats()

        elif command == "format":
            if self.capture is None or arg not in self.capture.supported_formats:
                print(f"Unsupported format: {arg or '(none)'}")
            else:
                self.settings.mime_type = arg
                print(f"Recording format: {arg}")

        elif command == "slice":
            self.settings.time_slice_ms = clamp_time_slice(arg)
            print(f"Chunk interval: {self.settings.time_slice_ms}ms")

        elif command == "stats":
            self._print_stats()

        elif command == "log":
            for entry in self.activity:
                print(f"  {entry}")

        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

        return True

    async def receive_messages(self, channel: Connection) -> None:
        """Receive and handle messages until the relay closes the channel."""
        try:
            async for message in channel.receive():
                await self.handle_message(message)
        except ConnectionError as e:
            logger.error(f"Error receiving messages: {e}")
        self.log_activity("WebSocket disconnected")

    async def input_loop(self) -> None:
        """Handle user input from stdin."""
        print("\n" + "=" * 60)
        print("Voki Toki walkie-talkie")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                line = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                break
            if not await self.handle_command(line):
                print("\nGoodbye!")
                break

    async def run(self) -> None:
        """Connect and run until the user quits or the relay disconnects."""
        channel = await open_channel(self.config.server_url, self.config.max_message_bytes)
        self.attach(channel)
        self.log_activity("WebSocket connected")

        if self.config.room:
            await self.join(self.config.room)

        loop = asyncio.get_running_loop()
        stop = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

        tasks = [
            asyncio.create_task(self.input_loop()),
            asyncio.create_task(self.receive_messages(channel)),
            asyncio.create_task(stop.wait()),
        ]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.running = False
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            for task in tasks:
                task.cancel()
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop transmitting, stop playback and close the channel."""
        if self.capture is not None:
            await self.capture.close()
        await self.playback.close()
        if self.channel is not None:
            await self.channel.close()

    def _print_devices(self) -> None:
        try:
            devices = self.provider.enumerate_devices()
        except CaptureUnavailableError as e:
            print(f"Unable to list audio devices: {e}")
            return
        if not devices:
            print("No input devices found")
        for device in devices:
            marker = "*" if device.is_default else " "
            print(
                f" {marker} [{device.index}] {device.name} "
                f"({device.channels} ch, {device.default_sample_rate:.0f} Hz)"
            )

    def _print_formats(self) -> None:
        if self.capture is None:
            print("Not connected")
            return
        selected = self.capture.select_format()
        for mime_type in self.capture.supported_formats:
            marker = "*" if mime_type == selected else " "
            print(f" {marker} {mime_type}")

    def _print_stats(self) -> None:
        room = f"{self.room} ({self.room_count}/2)" if self.room else "none"
        print(f"Room: {room}")
        if self.capture is not None:
            tx = self.capture.stats
            print(
                f"TX: {tx.chunks_sent} chunks, {tx.bytes_sent} bytes, "
                f"{tx.chunks_dropped} dropped, last {tx.last_chunk_bytes} bytes"
            )
        rx = self.playback.stats
        print(
            f"RX: last {rx.last_chunk_bytes} bytes; played {rx.played}, "
            f"skipped {rx.skipped}, dropped {rx.dropped}, pending {self.playback.pending}"
        )
        incoming = self.incoming_config
        if incoming is not None:
            print(
                f"Incoming: {incoming.mime_type} "
                f"{incoming.sample_rate or '?'} Hz, {incoming.channels or '?'} ch"
            )

    def _on_capture_error(self, error: CaptureError) -> None:
        self.log_activity(f"Recorder error: {error}")

    def _on_capture_state(self, state: CaptureState) -> None:
        logger.debug(f"Capture state: {state.value}")


def main() -> None:
    """Main entry point for the walkie-talkie client."""
    parser = argparse.ArgumentParser(description="Walkie-talkie client for the audio relay")
    parser.add_argument(
        "--url",
        type=str,
        default="ws://localhost:8080/ws",
        help="Relay WebSocket URL (default: ws://localhost:8080/ws)",
    )
    parser.add_argument("--room", type=str, default=None, help="Room to join on connect")
    parser.add_argument(
        "--format", type=str, default=None, help="Preferred recording MIME type"
    )
    parser.add_argument(
        "--slice", type=int, default=250, help="Chunk interval in ms (min 50)"
    )
    parser.add_argument("--device", type=str, default=None, help="Input device name or index")
    parser.add_argument(
        "--output-device", type=str, default=None, help="Output device name or index"
    )
    parser.add_argument(
        "--max-backlog",
        type=int,
        default=None,
        help="Drop oldest received chunks beyond this many (default: unbounded)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    def device_arg(value: str | None) -> int | str | None:
        return int(value) if value is not None and value.isdigit() else value

    try:
        config = ClientConfig(
            server_url=args.url,
            room=args.room,
            mime_type=args.format,
            time_slice_ms=args.slice,
            device=device_arg(args.device),
            output_device=device_arg(args.output_device),
            max_playback_backlog=args.max_backlog,
            verbose=args.verbose,
        )
    except ValidationError as e:
        parser.error(str(e))

    logging.basicConfig(
        level=logging.DEBUG if config.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        asyncio.run(WalkieTalkieClient(config).run())
    except ConnectionError as e:
        logger.error(f"Client error: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
