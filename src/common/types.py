"""Common type aliases for the walkie-talkie relay.

These aliases name the domain concepts shared by the relay server and the
client pipeline, so signatures read in terms of rooms and chunks rather than
bare strings and bytes.

Example:
    >>> from common.types import AudioChunk, RoomID
    >>> room: RoomID = "abc"
    >>> chunk: AudioChunk = b"RIFF..."
"""

from typing import TypeAlias

# Audio types
AudioChunk: TypeAlias = bytes
"""One interval's worth of encoded audio.

Chunks are opaque to the relay. Receivers must play them in arrival order;
reordering corrupts the stream.
"""

MimeType: TypeAlias = str
"""Container/codec identifier, e.g. ``audio/wav`` or ``audio/ogg;codecs=vorbis``."""

# Session types
RoomID: TypeAlias = str
"""Caller-supplied room key (case-sensitive, trimmed, non-empty)."""

ConnectionID: TypeAlias = str
"""Opaque per-connection identifier assigned by the transport (``ws-<hex>``)."""

InboundMessage: TypeAlias = str | bytes
"""A message read from a transport channel: text is control, bytes is audio."""
