"""Walkie-talkie client: microphone capture, relay channel and sequential playback."""
