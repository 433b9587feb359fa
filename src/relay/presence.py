"""Presence fan-out to connected peers."""

import logging

from src.relay.metrics import RelayMetrics
from src.relay.protocol import UserStatusMessage
from src.relay.registry import SessionRegistry

logger = logging.getLogger(__name__)


class PresenceBroadcaster:
    """Sends the status of both roles to every registered connection.

    Best-effort: a failure to reach one recipient is logged and does not
    stop delivery to the other.
    """

    def __init__(self, registry: SessionRegistry, metrics: RelayMetrics | None = None) -> None:
        self.registry = registry
        self.metrics = metrics or RelayMetrics()

    def status_message(self) -> UserStatusMessage:
        """Current presence of both roles."""
        return UserStatusMessage(
            users=self.registry.status_by_name(),
            sessions=self.registry.session_count,
        )

    def broadcast(self) -> int:
        """Send presence to every registered connection.

        Returns:
            Number of recipients the message was queued for
        """
        message = self.status_message()
        delivered = 0

        for record in self.registry.registered():
            try:
                if record.send(message):
                    delivered += 1
            except Exception as e:
                logger.error(
                    "Failed to send presence update",
                    extra={"connection_id": record.connection_id, "error": str(e)},
                )

        self.metrics.record_presence_broadcast()
        self.metrics.set_sessions_active(self.registry.session_count)

        logger.info(
            "Presence broadcast",
            extra={"users": message.users, "recipients": delivered},
        )
        return delivered
