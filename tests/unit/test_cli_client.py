"""Unit tests for the walkie-talkie CLI client."""

import asyncio
import json
from collections.abc import AsyncIterator

import pytest

from client.capture import CaptureState
from client.cli_client import WalkieTalkieClient
from client.config import ClientConfig
from common.protocol import AudioConfigMessage, ErrorCode, ErrorMessage, serialize
from tests.helpers.fake_audio import FakeProvider, RecordingPlayer, tone
from tests.helpers.fake_connection import FakeConnection
from tests.helpers.waiting import wait_until


@pytest.fixture
def channel() -> FakeConnection:
    return FakeConnection("client")


@pytest.fixture
def player() -> RecordingPlayer:
    return RecordingPlayer()


@pytest.fixture
async def client(
    channel: FakeConnection, player: RecordingPlayer
) -> AsyncIterator[WalkieTalkieClient]:
    client = WalkieTalkieClient(
        ClientConfig(mime_type="audio/wav"), provider=FakeProvider(), player=player
    )
    client.attach(channel)
    yield client
    await client.shutdown()


class TestHandleMessage:
    """Test inbound message handling."""

    @pytest.mark.asyncio
    async def test_room_state(self, client: WalkieTalkieClient) -> None:
        await client.handle_message('{"type":"room-state","room":"abc","count":2,"limit":2}')

        assert client.room == "abc"
        assert client.room_count == 2
        assert client.activity[-1] == "Room abc: 2/2"

    @pytest.mark.asyncio
    async def test_room_full_error(self, client: WalkieTalkieClient) -> None:
        client.room = "old"
        error = ErrorMessage(code=ErrorCode.ROOM_FULL, message="Room 'abc' is full")

        await client.handle_message(serialize(error))

        assert client.room is None
        assert client.activity[-1] == "Error: Room 'abc' is full"

    @pytest.mark.asyncio
    async def test_incoming_config_sets_playback_format(
        self, client: WalkieTalkieClient, player: RecordingPlayer
    ) -> None:
        config = AudioConfigMessage(mime_type="audio/flac", sample_rate=44100, channels=2)

        await client.handle_message(serialize(config))
        await client.handle_message(b"chunk")
        await asyncio.wait_for(client.playback.drain(), timeout=2.0)

        assert client.incoming_config is not None
        assert client.incoming_config.sample_rate == 44100
        assert player.played[0][:2] == (b"chunk", "audio/flac")

    @pytest.mark.asyncio
    async def test_peer_leaving_forgets_incoming_format(
        self, client: WalkieTalkieClient, player: RecordingPlayer
    ) -> None:
        await client.handle_message('{"type":"room-state","room":"abc","count":2,"limit":2}')
        await client.handle_message(serialize(AudioConfigMessage(mime_type="audio/flac")))

        await client.handle_message('{"type":"room-state","room":"abc","count":1,"limit":2}')
        assert client.incoming_config is None

        # A new peer's chunks play with the local format until it announces its own
        await client.handle_message('{"type":"room-state","room":"abc","count":2,"limit":2}')
        await client.handle_message(b"chunk")
        await asyncio.wait_for(client.playback.drain(), timeout=2.0)
        assert player.played[0][1] == "audio/wav"

    @pytest.mark.asyncio
    async def test_room_change_forgets_incoming_format(self, client: WalkieTalkieClient) -> None:
        await client.handle_message('{"type":"room-state","room":"abc","count":2,"limit":2}')
        await client.handle_message(serialize(AudioConfigMessage(mime_type="audio/flac")))

        await client.handle_message('{"type":"room-state","room":"xyz","count":2,"limit":2}')

        assert client.room == "xyz"
        assert client.incoming_config is None

    @pytest.mark.asyncio
    async def test_same_peer_keeps_incoming_format(self, client: WalkieTalkieClient) -> None:
        await client.handle_message('{"type":"room-state","room":"abc","count":2,"limit":2}')
        await client.handle_message(serialize(AudioConfigMessage(mime_type="audio/flac")))

        await client.handle_message('{"type":"room-state","room":"abc","count":2,"limit":2}')

        assert client.playback_mime_type == "audio/flac"

    @pytest.mark.asyncio
    async def test_playback_format_defaults_to_selected(
        self, client: WalkieTalkieClient, player: RecordingPlayer
    ) -> None:
        await client.handle_message(b"chunk")
        await asyncio.wait_for(client.playback.drain(), timeout=2.0)

        assert client.capture is not None
        assert player.played[0][1] == client.capture.select_format() == "audio/wav"

    @pytest.mark.asyncio
    async def test_non_json_text(self, client: WalkieTalkieClient) -> None:
        await client.handle_message("hello there")

        assert client.activity[-1] == "Received non-JSON message"

    @pytest.mark.asyncio
    async def test_invalid_message_ignored(self, client: WalkieTalkieClient) -> None:
        await client.handle_message('{"type":"room-state","room":"abc"}')

        assert client.room is None

    @pytest.mark.asyncio
    async def test_receive_loop_until_disconnect(
        self, client: WalkieTalkieClient, channel: FakeConnection
    ) -> None:
        channel.feed('{"type":"room-state","room":"abc","count":1,"limit":2}')
        channel.finish()

        await asyncio.wait_for(client.receive_messages(channel), timeout=2.0)

        assert client.room == "abc"
        assert client.activity[-1] == "WebSocket disconnected"


class TestCommands:
    """Test user commands."""

    @pytest.mark.asyncio
    async def test_join(self, client: WalkieTalkieClient, channel: FakeConnection) -> None:
        assert await client.handle_command("/join  abc ") is True

        assert channel.texts == [{"type": "join", "room": "abc"}]

    @pytest.mark.asyncio
    async def test_join_requires_room(
        self, client: WalkieTalkieClient, channel: FakeConnection
    ) -> None:
        await client.handle_command("/join")

        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_leave(self, client: WalkieTalkieClient, channel: FakeConnection) -> None:
        client.room = "abc"
        client.incoming_config = AudioConfigMessage(mime_type="audio/flac")

        await client.handle_command("/leave")

        assert channel.texts == [{"type": "leave"}]
        assert client.room is None
        assert client.incoming_config is None

    @pytest.mark.asyncio
    async def test_empty_line_toggles_talk(
        self, client: WalkieTalkieClient, channel: FakeConnection
    ) -> None:
        assert client.capture is not None
        client.room = "abc"

        await client.handle_command("")
        assert client.capture.state is CaptureState.STREAMING

        assert isinstance(client.provider, FakeProvider)
        client.provider.stream.push(tone(2000))
        await wait_until(lambda: len(channel.binaries) == 1)

        await client.handle_command("/talk")
        assert client.capture.state is CaptureState.IDLE
        assert json.loads(channel.sent[0])["type"] == "audio-config"
        assert client.activity[-1] == "Recording stopped"

    @pytest.mark.asyncio
    async def test_talk_without_connection(
        self, channel: FakeConnection, player: RecordingPlayer
    ) -> None:
        client = WalkieTalkieClient(ClientConfig(), provider=FakeProvider(), player=player)
        client.attach(FakeConnection("client", is_open=False))

        await client.handle_command("/talk")

        assert client.activity[-1].startswith("Cannot start recording")
        await client.shutdown()

    @pytest.mark.asyncio
    async def test_talk_denied(self, channel: FakeConnection, player: RecordingPlayer) -> None:
        client = WalkieTalkieClient(
            ClientConfig(), provider=FakeProvider(deny=True), player=player
        )
        client.attach(channel)

        await client.handle_command("/talk")

        assert client.activity[-1].startswith("Microphone access failed (permission-denied)")
        assert client.capture is not None
        assert client.capture.state is CaptureState.IDLE
        await client.shutdown()

    @pytest.mark.asyncio
    async def test_settings_commands(self, client: WalkieTalkieClient) -> None:
        await client.handle_command("/slice 10")
        assert client.settings.time_slice_ms == 50

        await client.handle_command("/device 3")
        assert client.settings.device == 3

        await client.handle_command("/device USB Headset")
        assert client.settings.device == "USB Headset"

        await client.handle_command("/format audio/x-bogus")
        assert client.settings.mime_type == "audio/wav"

    @pytest.mark.asyncio
    async def test_listing_commands(
        self, client: WalkieTalkieClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        await client.handle_command("/devices")
        await client.handle_command("/formats")
        await client.handle_command("/stats")
        await client.handle_command("/help")

        out = capsys.readouterr().out
        assert "[3] USB Headset" in out
        assert "* audio/wav" in out
        assert "TX: 0 chunks" in out
        assert "/quit" in out

    @pytest.mark.asyncio
    async def test_log_command(
        self, client: WalkieTalkieClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        client.log_activity("Recording started")
        capsys.readouterr()

        await client.handle_command("/log")

        assert "Recording started" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_unknown_and_quit(
        self, client: WalkieTalkieClient, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert await client.handle_command("/dance") is True
        assert "Unknown command: dance" in capsys.readouterr().out

        assert await client.handle_command("/quit") is False
