"""Configuration schema for the relay server.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

import logging
import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=0, le=65535, description="Bind port (0 = ephemeral)")
    path: str = Field(default="/ws", description="Request path for WebSocket upgrades")
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Largest accepted frame (1MB default)"
    )
    send_timeout_s: float = Field(
        default=5.0, gt=0, description="Upper bound for a single send to one peer"
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Validate that the WebSocket path is absolute."""
        if not v.startswith("/"):
            raise ValueError(f"WebSocket path must start with '/', got '{v}'")
        return v


class HealthConfig(BaseModel):
    """Health check / metrics HTTP server configuration."""

    enabled: bool = Field(default=True, description="Serve health and metrics endpoints")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int | None = Field(
        default=None,
        ge=0,
        le=65535,
        description="Bind port (defaults to the WebSocket port + 1)",
    )


class RelayConfig(BaseModel):
    """Root relay configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the logging level name."""
        level = v.upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {list(VALID_LOG_LEVELS)}, got '{v}'")
        return level

    @property
    def health_port(self) -> int:
        """Resolved health server port."""
        if self.health.port is not None:
            return self.health.port
        return self.websocket.port + 1 if self.websocket.port else 0

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level)

    @classmethod
    def from_yaml(cls, path: Path) -> "RelayConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Configuration root must be a mapping: {path}")

        return cls.model_validate(cls._apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(cls._apply_env_overrides({}))

    @staticmethod
    def _apply_env_overrides(data: dict) -> dict:
        """Apply PORT / RELAY_HOST / LOG_LEVEL environment overrides."""
        if port := os.getenv("PORT"):
            data.setdefault("websocket", {})["port"] = int(port)

        if host := os.getenv("RELAY_HOST"):
            data.setdefault("websocket", {})["host"] = host

        if log_level := os.getenv("LOG_LEVEL"):
            data["log_level"] = log_level

        return data
