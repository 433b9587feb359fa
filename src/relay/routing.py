"""Inbound message routing.

Every inbound frame is decoded once into a MessageKind and handed to exactly
one handler. Precedence follows the kind order: heartbeat, ping, status
request, audio, listening signal, telemetry signal, and finally role
identification or a diagnostic echo for anything else.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from src.relay.audio_relay import AudioRelay
from src.relay.config import RelayConfig
from src.relay.identification import claimed_name, expected_formats, resolve_claim
from src.relay.metrics import RelayMetrics
from src.relay.presence import PresenceBroadcaster
from src.relay.protocol import (
    DEBUG_ECHO_LIMIT,
    AudioDataMessage,
    ConnectionConfirmedMessage,
    DebugMessage,
    DecodedMessage,
    ErrorMessage,
    HeartbeatMessage,
    MessageDecoder,
    MessageKind,
    PongMessage,
    utc_timestamp,
)
from src.relay.registry import SessionRegistry
from src.relay.roles import Role
from src.relay.session import ConnectionRecord, ConnectionState

logger = logging.getLogger(__name__)

Handler = Callable[[ConnectionRecord, DecodedMessage], Awaitable[None]]


class MessageRouter:
    """Dispatches decoded peer messages to their handlers."""

    def __init__(
        self,
        registry: SessionRegistry,
        presence: PresenceBroadcaster,
        audio_relay: AudioRelay,
        config: RelayConfig | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        """Initialize router.

        Args:
            registry: Session registry
            presence: Presence broadcaster
            audio_relay: Audio relay
            config: Relay configuration (signal type names)
            metrics: Metrics collector
        """
        self.registry = registry
        self.roles = registry.roles
        self.presence = presence
        self.audio_relay = audio_relay
        self.config = config or RelayConfig()
        self.metrics = metrics or RelayMetrics()
        self.decoder = MessageDecoder(self.config.signals)

        self._handlers: dict[MessageKind, Handler] = {
            MessageKind.HEARTBEAT: self._handle_heartbeat,
            MessageKind.PING: self._handle_ping,
            MessageKind.STATUS_REQUEST: self._handle_status_request,
            MessageKind.AUDIO_DATA: self._handle_audio,
            MessageKind.LISTENING: self._handle_listening,
            MessageKind.TELEMETRY: self._handle_telemetry,
            MessageKind.OTHER: self._handle_other,
        }

    async def handle(self, record: ConnectionRecord, raw: str) -> None:
        """Route one inbound frame from a connection."""
        if record.state is ConnectionState.CLOSED:
            logger.debug(
                "Ignoring message on closed connection",
                extra={"connection_id": record.connection_id},
            )
            return

        record.metrics.messages_received += 1
        self.metrics.record_message_received()

        message = self.decoder.decode(raw)
        logger.debug(
            "Message received",
            extra={
                "connection_id": record.connection_id,
                "kind": message.kind.value,
                "size": len(raw),
                "identity": self._name(record.identity),
            },
        )

        try:
            await self._handlers[message.kind](record, message)
        except ValidationError as e:
            logger.warning(
                "Invalid message fields",
                extra={
                    "connection_id": record.connection_id,
                    "type": message.type,
                    "errors": e.error_count(),
                },
            )
            record.send(
                ErrorMessage(
                    message=f"Invalid '{message.type}' message: {e.error_count()} field error(s)",
                    code="INVALID_MESSAGE",
                )
            )

    # === Activity signals ===

    async def _handle_heartbeat(self, record: ConnectionRecord, message: DecodedMessage) -> None:
        heartbeat = HeartbeatMessage.model_validate(message.data)

        role = self.roles.parse(heartbeat.sender) if heartbeat.sender else record.identity
        if role is None:
            logger.debug(
                "Heartbeat for unknown role ignored",
                extra={"connection_id": record.connection_id, "from": heartbeat.sender},
            )
            return

        self.registry.touch(role)

    async def _handle_ping(self, record: ConnectionRecord, message: DecodedMessage) -> None:
        self._touch_sender(record)
        record.send(PongMessage())

    async def _handle_status_request(
        self, record: ConnectionRecord, message: DecodedMessage
    ) -> None:
        record.send(self.presence.status_message())

    # === Audio ===

    async def _handle_audio(self, record: ConnectionRecord, message: DecodedMessage) -> None:
        if record.identity is None:
            logger.warning(
                "Audio received before identification",
                extra={"connection_id": record.connection_id},
            )
            record.send(
                ErrorMessage(
                    message="Identification required before sending audio",
                    code="IDENTIFICATION_REQUIRED",
                )
            )
            return

        audio = AudioDataMessage.model_validate(message.data)
        self._touch_sender(record)
        self.audio_relay.relay(record.identity, audio)

    # === Directional signals ===

    async def _handle_listening(self, record: ConnectionRecord, message: DecodedMessage) -> None:
        data = message.data
        if data is None or not self._sent_by(record, data, Role.A):
            self._drop_signal(record, message, Role.A)
            return

        self.registry.touch(Role.A)

        forwarded = {
            **data,
            "from": self.roles.name_a,
            "timestamp": utc_timestamp(),
        }
        self._forward(Role.B, forwarded, message)

    async def _handle_telemetry(self, record: ConnectionRecord, message: DecodedMessage) -> None:
        data = message.data
        if data is None or not self._sent_by(record, data, Role.B):
            self._drop_signal(record, message, Role.B)
            return

        if data.get("from") == self.roles.name_b:
            self.registry.touch(Role.B)

        self._forward(Role.A, data, message)

    def _drop_signal(self, record: ConnectionRecord, message: DecodedMessage, origin: Role) -> None:
        logger.info(
            "Signal dropped, sender is not its origin role",
            extra={
                "connection_id": record.connection_id,
                "type": message.type,
                "identity": self._name(record.identity),
                "origin": self.roles.name_of(origin),
            },
        )

    def _forward(self, target: Role, payload: dict[str, Any], message: DecodedMessage) -> None:
        recipient = self.registry.get(target)
        if recipient is None or not recipient.is_open:
            logger.info(
                "Signal not forwarded, recipient not connected",
                extra={"type": message.type, "to": self.roles.name_of(target)},
            )
            return

        if recipient.send(payload):
            self.metrics.record_signal_forwarded()
            logger.debug(
                "Signal forwarded",
                extra={"type": message.type, "to": self.roles.name_of(target)},
            )

    # === Identification / fallback ===

    async def _handle_other(self, record: ConnectionRecord, message: DecodedMessage) -> None:
        role = resolve_claim(message, self.roles)
        if role is not None:
            await self._identify(record, role)
            return

        self.metrics.record_unrecognized()
        logger.info(
            "Unrecognized message",
            extra={
                "connection_id": record.connection_id,
                "claimed": claimed_name(message) if message.is_structured else None,
                "received": message.raw[:DEBUG_ECHO_LIMIT],
            },
        )
        record.send(
            DebugMessage(
                received=message.raw[:DEBUG_ECHO_LIMIT],
                message=(
                    f"Unrecognized format. Send '{self.roles.name_a}' or "
                    f"'{self.roles.name_b}' to identify."
                ),
                expected_formats=expected_formats(self.roles),
            )
        )

    async def _identify(self, record: ConnectionRecord, role: Role) -> None:
        name = self.roles.name_of(role)

        if record.identity is not None and record.identity is not role:
            logger.warning(
                "Conflicting role claim rejected",
                extra={
                    "connection_id": record.connection_id,
                    "identity": self._name(record.identity),
                    "claimed": name,
                },
            )
            record.send(
                ErrorMessage(
                    message=f"Connection already identified as {self._name(record.identity)}",
                    code="ALREADY_IDENTIFIED",
                )
            )
            return

        result = await self.registry.register(record, role)

        record.send(
            ConnectionConfirmedMessage(
                client=name,
                message=f"Hello {name}! Connection established. Audio streaming available.",
                connection_id=record.connection_id,
            )
        )

        if result.changed:
            self.metrics.record_identification(takeover=result.displaced is not None)
            self.presence.broadcast()

    # === Helpers ===

    def _touch_sender(self, record: ConnectionRecord) -> None:
        if record.identity is not None and self.registry.is_registered(record):
            self.registry.touch(record.identity)

    def _sent_by(self, record: ConnectionRecord, data: dict[str, Any], role: Role) -> bool:
        if record.identity is not None:
            return record.identity is role
        return data.get("from") == self.roles.name_of(role)

    def _name(self, role: Role | None) -> str | None:
        return self.roles.name_of(role) if role is not None else None
