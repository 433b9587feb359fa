"""Audio forwarding between the two roles.

Delivery is best-effort and at-most-once: a chunk is queued for the
recipient's connection or reported back to the sender as undeliverable.
Nothing is buffered or retried.
"""

import logging
from enum import Enum

from src.relay.config import AudioConfig
from src.relay.metrics import RelayMetrics
from src.relay.protocol import AudioDataMessage, AudioEnvelope, DeliveryFailedMessage
from src.relay.registry import SessionRegistry
from src.relay.roles import Role

logger = logging.getLogger(__name__)

RECIPIENT_NOT_CONNECTED = "recipient not connected"
RECIPIENT_QUEUE_FULL = "recipient send queue full"


class RelayOutcome(Enum):
    """Result of one relay attempt."""

    DELIVERED = "delivered"
    DROPPED = "dropped"
    DELIVERY_FAILED = "delivery_failed"


class AudioRelay:
    """Validates audio chunks and forwards them to the recipient role."""

    def __init__(
        self,
        registry: SessionRegistry,
        audio_config: AudioConfig | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        """Initialize audio relay.

        Args:
            registry: Session registry used to find sender and recipient
            audio_config: Metadata defaults for envelopes
            metrics: Metrics collector
        """
        self.registry = registry
        self.audio_config = audio_config or AudioConfig()
        self.metrics = metrics or RelayMetrics()

    def relay(self, sender_role: Role, message: AudioDataMessage) -> RelayOutcome:
        """Forward one audio chunk from an identified sender.

        Args:
            sender_role: Role bound to the originating connection
            message: Validated inbound audio message

        Returns:
            What happened to the chunk
        """
        roles = self.registry.roles
        sender_name = roles.name_of(sender_role)

        payload = message.data
        if not isinstance(payload, str) or not payload:
            return self._drop("empty payload", sender_name, message)

        recipient_role = roles.parse(message.recipient)
        if recipient_role is None:
            return self._drop("unknown recipient", sender_name, message)

        if message.sender != sender_name:
            return self._drop("sender does not match connection identity", sender_name, message)

        recipient_name = roles.name_of(recipient_role)
        envelope = AudioEnvelope(
            sender=sender_name,
            recipient=recipient_name,
            data=payload,
            sample_rate=message.sample_rate or self.audio_config.default_sample_rate,
            format=message.format or self.audio_config.default_format,
            channels=message.channels or self.audio_config.default_channels,
        )

        recipient = self.registry.get(recipient_role)
        if recipient is None or not recipient.is_open:
            return self._report_failure(sender_role, recipient_name, RECIPIENT_NOT_CONNECTED)

        if not recipient.send(envelope):
            return self._report_failure(sender_role, recipient_name, RECIPIENT_QUEUE_FULL)

        self.metrics.record_audio_relayed()
        logger.debug(
            "Audio relayed",
            extra={
                "from": sender_name,
                "to": recipient_name,
                "payload_chars": len(payload),
                "sample_rate": envelope.sample_rate,
            },
        )
        return RelayOutcome.DELIVERED

    def _drop(self, reason: str, sender_name: str, message: AudioDataMessage) -> RelayOutcome:
        self.metrics.record_audio_dropped()
        logger.warning(
            "Audio chunk dropped",
            extra={
                "reason": reason,
                "connection_role": sender_name,
                "declared_from": message.sender,
                "declared_to": message.recipient,
            },
        )
        return RelayOutcome.DROPPED

    def _report_failure(
        self, sender_role: Role, recipient_name: str, reason: str
    ) -> RelayOutcome:
        self.metrics.record_delivery_failure()
        logger.warning(
            "Audio delivery failed",
            extra={"to": recipient_name, "reason": reason},
        )

        sender = self.registry.get(sender_role)
        if sender is not None:
            sender.send(DeliveryFailedMessage(target=recipient_name, reason=reason))
        return RelayOutcome.DELIVERY_FAILED
