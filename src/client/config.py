"""Configuration schema for the walkie-talkie client."""

from typing import Final

from pydantic import BaseModel, Field, field_validator

DEFAULT_SERVER_URL: Final[str] = "ws://localhost:8080/ws"
DEFAULT_TIME_SLICE_MS: Final[int] = 250
MIN_TIME_SLICE_MS: Final[int] = 50
DEFAULT_MIME_TYPE: Final[str] = "audio/wav"


def clamp_time_slice(value: object) -> int:
    """Normalize a chunk interval in milliseconds.

    Non-numeric or non-positive values fall back to the default; anything
    else is raised to at least ``MIN_TIME_SLICE_MS``.
    """
    try:
        ms = int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError):
        return DEFAULT_TIME_SLICE_MS
    if ms <= 0:
        return DEFAULT_TIME_SLICE_MS
    return max(MIN_TIME_SLICE_MS, ms)


class ClientConfig(BaseModel):
    """Client settings, built from command-line arguments."""

    server_url: str = Field(default=DEFAULT_SERVER_URL, description="Relay WebSocket URL")
    room: str | None = Field(default=None, description="Room to join after connecting")
    device: int | str | None = Field(
        default=None, description="Input device index or name (None = system default)"
    )
    output_device: int | str | None = Field(
        default=None, description="Output device index or name (None = system default)"
    )
    mime_type: str | None = Field(
        default=None, description="Preferred recording format (None = first supported)"
    )
    time_slice_ms: int = Field(
        default=DEFAULT_TIME_SLICE_MS, description="Chunk interval in milliseconds"
    )
    max_playback_backlog: int | None = Field(
        default=None, ge=1, description="Drop oldest queued chunks beyond this (None = unbounded)"
    )
    max_message_bytes: int = Field(default=2**20, ge=1024, description="Largest accepted frame")
    verbose: bool = Field(default=False, description="Enable verbose logging")

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        """Validate that the URL uses a WebSocket scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError(f"server_url must start with ws:// or wss://, got '{v}'")
        return v

    @field_validator("time_slice_ms", mode="before")
    @classmethod
    def validate_time_slice(cls, v: object) -> int:
        """Clamp the chunk interval to the supported minimum."""
        return clamp_time_slice(v)
