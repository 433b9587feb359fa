"""Liveness monitoring for registered peers.

Four periodic jobs share the session registry with the message router:

- timeout sweep: evicts roles idle for longer than the heartbeat timeout
- stale sweep: removes registrations whose transport already closed
- keepalive: sends transport pings to held connections
- status log: logs the registry snapshot
"""

import asyncio
import logging

from src.relay.config import HeartbeatConfig
from src.relay.metrics import RelayMetrics
from src.relay.presence import PresenceBroadcaster
from src.relay.registry import SessionRegistry, SweepResult
from src.relay.scheduler import PeriodicScheduler

logger = logging.getLogger(__name__)

TIMEOUT_TASK = "heartbeat_timeout"
STALE_TASK = "stale_cleanup"
KEEPALIVE_TASK = "keepalive_ping"
STATUS_TASK = "status_log"


class HeartbeatMonitor:
    """Detects silent peer failures and keeps the registry consistent."""

    def __init__(
        self,
        registry: SessionRegistry,
        presence: PresenceBroadcaster,
        config: HeartbeatConfig | None = None,
        metrics: RelayMetrics | None = None,
    ) -> None:
        """Initialize heartbeat monitor.

        Args:
            registry: Session registry to sweep
            presence: Broadcaster notified when a sweep changes presence
            config: Periods and timeout
            metrics: Metrics collector
        """
        self.registry = registry
        self.presence = presence
        self.config = config or HeartbeatConfig()
        self.metrics = metrics or RelayMetrics()

    def register_tasks(self, scheduler: PeriodicScheduler) -> None:
        """Add the monitor's jobs to a scheduler."""
        scheduler.add(TIMEOUT_TASK, self.config.check_interval_s, self.check_timeouts)
        scheduler.add(STALE_TASK, self.config.cleanup_interval_s, self.sweep_stale)
        scheduler.add(KEEPALIVE_TASK, self.config.keepalive_interval_s, self.send_keepalives)
        scheduler.add(STATUS_TASK, self.config.status_log_interval_s, self.log_status)

    async def check_timeouts(self) -> SweepResult:
        """Evict idle roles and broadcast presence if any were evicted."""
        result = await self.registry.evict_idle()
        if result.removed:
            self.metrics.record_evictions(len(result.removed))
            self._broadcast("heartbeat_timeout")
        return result

    async def sweep_stale(self) -> SweepResult:
        """Remove registrations with closed transports."""
        result = await self.registry.sweep_stale()
        if result.removed:
            self.metrics.record_stale_removals(len(result.removed))
        if result.changed:
            self._broadcast("stale_cleanup")
        return result

    async def send_keepalives(self) -> int:
        """Ping every registered connection.

        Returns:
            Number of connections pinged successfully
        """
        records = [record for record in self.registry.registered() if record.is_open]
        if not records:
            return 0

        results = await asyncio.gather(
            *(
                asyncio.wait_for(record.transport.ping(), timeout=self.config.ping_timeout_s)
                for record in records
            ),
            return_exceptions=True,
        )

        ok = 0
        for record, outcome in zip(records, results, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "Keepalive ping failed",
                    extra={"connection_id": record.connection_id, "error": str(outcome)},
                )
            else:
                ok += 1
        return ok

    async def log_status(self) -> None:
        """Log the registry snapshot."""
        logger.info("Relay status", extra=self.registry.snapshot())

    def _broadcast(self, cause: str) -> None:
        try:
            self.presence.broadcast()
        except Exception as e:
            logger.error(
                "Presence broadcast failed",
                extra={"cause": cause, "error": str(e)},
            )
