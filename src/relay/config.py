"""Configuration schema for the relay server.

Defines Pydantic models for loading and validating relay configuration
from YAML files and environment variables.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


class RolesConfig(BaseModel):
    """Names of the two peer roles the relay mediates between."""

    role_a: str = Field(default="bernard", description="Role A name (audio producer)")
    role_b: str = Field(default="liliann", description="Role B name (audio consumer)")

    @field_validator("role_a", "role_b")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Role names are matched exactly against bare-text messages."""
        if not v or v != v.strip():
            raise ValueError(f"Role name must be non-empty without surrounding whitespace, got '{v}'")
        return v

    @model_validator(mode="after")
    def validate_distinct(self) -> "RolesConfig":
        """Reject configurations where both roles share a name."""
        if self.role_a == self.role_b:
            raise ValueError(f"Role names must be distinct, both are '{self.role_a}'")
        return self


class WebSocketConfig(BaseModel):
    """WebSocket transport configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65535, description="Bind port")
    max_message_bytes: int = Field(
        default=4 * 2**20,
        ge=1024,
        description="Maximum inbound message size (audio chunks are base64 text)",
    )
    outbound_queue_size: int = Field(
        default=256, ge=8, description="Per-connection outbound message buffer"
    )
    server_name: str = Field(
        default="Peer Relay Server v2.0", description="Server name announced in welcome"
    )


class TransportConfig(BaseModel):
    """Transport layer configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)


class HeartbeatConfig(BaseModel):
    """Liveness monitoring configuration."""

    check_interval_s: float = Field(
        default=10.0, gt=0, description="Period of the heartbeat timeout sweep"
    )
    timeout_s: float = Field(
        default=45.0, gt=0, description="Idle time after which a role is evicted"
    )
    cleanup_interval_s: float = Field(
        default=60.0, gt=0, description="Period of the stale connection sweep"
    )
    keepalive_interval_s: float = Field(
        default=30.0, gt=0, description="Period of transport pings to held connections"
    )
    status_log_interval_s: float = Field(
        default=60.0, gt=0, description="Period of registry status logging"
    )
    ping_timeout_s: float = Field(
        default=5.0, gt=0, description="Time allowed for a single keepalive ping to be sent"
    )

    @model_validator(mode="after")
    def validate_timeout(self) -> "HeartbeatConfig":
        """Timeout must span at least one sweep period."""
        if self.timeout_s <= self.check_interval_s:
            raise ValueError(
                f"heartbeat timeout_s ({self.timeout_s}) must exceed "
                f"check_interval_s ({self.check_interval_s})"
            )
        return self


class AudioConfig(BaseModel):
    """Metadata defaults filled into relayed audio envelopes."""

    default_sample_rate: int = Field(default=44100, ge=8000, le=192000)
    default_format: str = Field(default="PCM_16BIT")
    default_channels: int = Field(default=1, ge=1, le=8)


class SignalsConfig(BaseModel):
    """Type discriminators of the directional activity signals."""

    listening_type: str = Field(
        default="bernard_listening",
        description="Listening-state signal forwarded from role A to role B",
    )
    telemetry_type: str = Field(
        default="device_status",
        description="Device telemetry signal forwarded from role B to role A",
    )

    @model_validator(mode="after")
    def validate_distinct(self) -> "SignalsConfig":
        """Signal types must not collide with each other or built-in types."""
        reserved = {"heartbeat", "ping", "status_request", "audio_data", "connect", "identify"}
        for name in (self.listening_type, self.telemetry_type):
            if name in reserved:
                raise ValueError(f"Signal type '{name}' collides with a built-in message type")
        if self.listening_type == self.telemetry_type:
            raise ValueError("listening_type and telemetry_type must differ")
        return self


class HealthConfig(BaseModel):
    """HTTP health endpoint configuration."""

    enabled: bool = Field(default=True, description="Serve /health and /metrics")
    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int | None = Field(
        default=None,
        ge=1024,
        le=65535,
        description="Bind port (defaults to WebSocket port + 1)",
    )


class RelayConfig(BaseModel):
    """Root relay configuration."""

    roles: RolesConfig = Field(default_factory=RolesConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    signals: SignalsConfig = Field(default_factory=SignalsConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: float = Field(
        default=5.0,
        gt=0,
        description="Time allowed to flush shutdown notices to peers",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @property
    def health_port(self) -> int:
        """Resolved health endpoint port."""
        if self.health.port is not None:
            return self.health.port
        return self.transport.websocket.port + 1

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

        _apply_env_overrides(data)
        return cls.model_validate(data)

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "RelayConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        data: dict[str, Any] = {}
        _apply_env_overrides(data)
        return cls.model_validate(data)


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Apply RELAY_* environment variables on top of file configuration."""
    import os

    if host := os.getenv("RELAY_HOST"):
        websocket = data.setdefault("transport", {}).setdefault("websocket", {})
        websocket["host"] = host

    if port := os.getenv("RELAY_PORT"):
        websocket = data.setdefault("transport", {}).setdefault("websocket", {})
        websocket["port"] = int(port)

    if role_a := os.getenv("RELAY_ROLE_A"):
        data.setdefault("roles", {})["role_a"] = role_a

    if role_b := os.getenv("RELAY_ROLE_B"):
        data.setdefault("roles", {})["role_b"] = role_b

    if timeout := os.getenv("RELAY_HEARTBEAT_TIMEOUT_S"):
        data.setdefault("heartbeat", {})["timeout_s"] = float(timeout)

    if log_level := os.getenv("RELAY_LOG_LEVEL"):
        data["log_level"] = log_level
