"""Relay message protocol definitions.

Defines Pydantic models for the JSON messages exchanged with peers and the
decode step that classifies an inbound frame into a closed set of message
kinds. Wire field names are camelCase where peers expect them (aliases);
Python attribute names are snake_case.
"""

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from src.relay.config import SignalsConfig

# Close codes sent with forced closures
CLOSE_HEARTBEAT_TIMEOUT = 4000
CLOSE_SUPERSEDED = 4001
CLOSE_SERVER_SHUTDOWN = 1001
CLOSE_INTERNAL_ERROR = 1011

DEBUG_ECHO_LIMIT = 100


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision."""
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# ============================================================================
# Server → Peer messages
# ============================================================================


class RelayMessage(BaseModel):
    """Base for all server → peer messages."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: str = Field(default_factory=utc_timestamp)

    def to_json(self) -> str:
        """Serialize with wire (alias) field names."""
        return self.model_dump_json(by_alias=True)


class WelcomeMessage(RelayMessage):
    """Sent to every new connection before identification."""

    type: Literal["welcome"] = "welcome"
    message: str
    server: str
    features: list[str] = Field(
        default_factory=lambda: ["audio_streaming", "real_time_communication"]
    )
    connection_id: str = Field(..., alias="connectionId")


class ConnectionConfirmedMessage(RelayMessage):
    """Sent to a connection once its role claim is accepted."""

    type: Literal["connection_confirmed"] = "connection_confirmed"
    client: str
    status: str = "connected"
    message: str
    connection_id: str = Field(..., alias="connectionId")


class PongMessage(RelayMessage):
    """Reply to an application-level ping."""

    type: Literal["pong"] = "pong"


class UserStatusMessage(RelayMessage):
    """Presence of both roles."""

    type: Literal["user_status"] = "user_status"
    users: dict[str, str]
    sessions: int = Field(default=0, ge=0, le=2)


class AudioEnvelope(RelayMessage):
    """Audio chunk forwarded to the recipient role."""

    type: Literal["audio_data"] = "audio_data"
    sender: str = Field(..., alias="from")
    recipient: str = Field(..., alias="to")
    data: str
    sample_rate: int = Field(..., alias="sampleRate")
    format: str
    channels: int


class DeliveryFailedMessage(RelayMessage):
    """Tells an audio sender its chunk did not reach the recipient."""

    type: Literal["delivery_failed"] = "delivery_failed"
    target: str
    reason: str


class ErrorMessage(RelayMessage):
    """Error notification."""

    type: Literal["error"] = "error"
    message: str
    code: str = Field(default="INTERNAL_ERROR")


class DebugMessage(RelayMessage):
    """Diagnostic echo for input the relay could not interpret."""

    type: Literal["debug"] = "debug"
    received: str
    message: str
    expected_formats: list[str] = Field(..., alias="expectedFormats")


class DisconnectedMessage(RelayMessage):
    """Sent to a connection displaced by a newer connection for its role."""

    type: Literal["disconnected"] = "disconnected"
    reason: str


class ServerShutdownMessage(RelayMessage):
    """Sent to every registered peer before the server stops."""

    type: Literal["server_shutdown"] = "server_shutdown"
    message: str = "Server is shutting down"


# ============================================================================
# Peer → Server messages
# ============================================================================


class InboundMessage(BaseModel):
    """Base for validated peer → server messages."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HeartbeatMessage(InboundMessage):
    """Keeps a role alive without carrying data."""

    type: Literal["heartbeat"] = "heartbeat"
    sender: str | None = Field(default=None, alias="from")


class AudioDataMessage(InboundMessage):
    """Audio chunk sent by an identified peer.

    Sender, recipient and payload are accepted as-is: a missing, empty or
    ill-typed value is a policy violation dropped by the audio relay, not a
    decode error. Only the format metadata is strictly typed.
    """

    type: Literal["audio_data"] = "audio_data"
    sender: Any = Field(default=None, alias="from")
    recipient: Any = Field(default=None, alias="to")
    data: Any = ""
    sample_rate: int | None = Field(default=None, alias="sampleRate", gt=0)
    format: str | None = None
    channels: int | None = Field(default=None, gt=0)


# ============================================================================
# Decode step
# ============================================================================


class MessageKind(Enum):
    """Closed set of inbound message kinds, in routing precedence order."""

    HEARTBEAT = "heartbeat"
    PING = "ping"
    STATUS_REQUEST = "status_request"
    AUDIO_DATA = "audio_data"
    LISTENING = "listening"
    TELEMETRY = "telemetry"
    OTHER = "other"


_BUILTIN_KINDS: dict[str, MessageKind] = {
    "heartbeat": MessageKind.HEARTBEAT,
    "ping": MessageKind.PING,
    "status_request": MessageKind.STATUS_REQUEST,
    "audio_data": MessageKind.AUDIO_DATA,
}


@dataclass(frozen=True)
class DecodedMessage:
    """Result of decoding one inbound frame.

    `data` is the decoded JSON object, or None when the frame was not a JSON
    object (bare text, invalid JSON, or a JSON scalar/array).
    """

    kind: MessageKind
    raw: str
    data: dict[str, Any] | None = None

    @property
    def is_structured(self) -> bool:
        return self.data is not None

    @property
    def type(self) -> str | None:
        if self.data is None:
            return None
        value = self.data.get("type")
        return value if isinstance(value, str) else None


class MessageDecoder:
    """Two-stage decoder: structured JSON first, raw text otherwise."""

    def __init__(self, signals: SignalsConfig | None = None) -> None:
        signals = signals or SignalsConfig()
        self._kinds = dict(_BUILTIN_KINDS)
        self._kinds[signals.listening_type] = MessageKind.LISTENING
        self._kinds[signals.telemetry_type] = MessageKind.TELEMETRY

    def decode(self, raw: str) -> DecodedMessage:
        """Classify a frame. Never raises on bad input."""
        data = _parse_json_object(raw)
        if data is None:
            return DecodedMessage(kind=MessageKind.OTHER, raw=raw)

        msg_type = data.get("type")
        if not isinstance(msg_type, str):
            return DecodedMessage(kind=MessageKind.OTHER, raw=raw, data=data)

        kind = self._kinds.get(msg_type, MessageKind.OTHER)
        return DecodedMessage(kind=kind, raw=raw, data=data)


def _parse_json_object(raw: str) -> dict[str, Any] | None:
    try:
        data = json.loads(raw)
    except (ValueError, RecursionError):
        return None
    return data if isinstance(data, dict) else None
