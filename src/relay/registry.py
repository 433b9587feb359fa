"""Session registry: which connection currently holds each role.

The registry is the single owner of role → connection bindings and of the
presence status reported to peers. All mutations run under one asyncio lock
and never await I/O while holding it; closing a displaced or evicted
connection is queued on that connection, not awaited.

Invariant (after every mutation): a role has a registered connection if and
only if its status is "connected".
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.relay.protocol import (
    CLOSE_HEARTBEAT_TIMEOUT,
    CLOSE_SUPERSEDED,
    DisconnectedMessage,
)
from src.relay.roles import Role, RoleSet
from src.relay.session import ConnectionRecord, ConnectionState

logger = logging.getLogger(__name__)

SUPERSEDED_REASON = "New connection for the same client"
HEARTBEAT_TIMEOUT_REASON = "Heartbeat timeout"


class PresenceStatus(Enum):
    """Presence of a role as reported to peers."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass
class RegistrationResult:
    """Outcome of a registration attempt.

    Attributes:
        changed: Registry was mutated (a presence broadcast is due)
        displaced: Connection that previously held the role, now closing
    """

    changed: bool
    displaced: ConnectionRecord | None = None


@dataclass
class SweepResult:
    """Outcome of a timeout or stale-handle sweep."""

    removed: list[ConnectionRecord] = field(default_factory=list)
    repaired: list[Role] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.removed or self.repaired)


class SessionRegistry:
    """Role → connection bindings with presence status.

    Thread-safety: NOT thread-safe. Mutations are serialized by an asyncio
    lock on the owning event loop.
    """

    def __init__(
        self,
        roles: RoleSet,
        heartbeat_timeout_s: float = 45.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize registry.

        Args:
            roles: Configured role names
            heartbeat_timeout_s: Idle time after which a role is evicted
            clock: Monotonic time source
        """
        self.roles = roles
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self._clock = clock
        self._lock = asyncio.Lock()

        self._active: dict[Role, ConnectionRecord | None] = {role: None for role in Role}
        self._status: dict[Role, PresenceStatus] = {
            role: PresenceStatus.DISCONNECTED for role in Role
        }
        self._last_activity: dict[Role, float | None] = {role: None for role in Role}

    # === Reads ===

    def get(self, role: Role) -> ConnectionRecord | None:
        """Registered connection for a role, if any."""
        return self._active[role]

    def status(self, role: Role) -> PresenceStatus:
        return self._status[role]

    def last_activity(self, role: Role) -> float | None:
        return self._last_activity[role]

    def is_registered(self, record: ConnectionRecord) -> bool:
        return record.identity is not None and self._active[record.identity] is record

    @property
    def session_count(self) -> int:
        """Number of roles with a registered connection."""
        return sum(1 for record in self._active.values() if record is not None)

    def registered(self) -> list[ConnectionRecord]:
        """All registered connections, role A first."""
        return [record for record in self._active.values() if record is not None]

    def status_by_name(self) -> dict[str, str]:
        """Presence keyed by role name, as sent to peers."""
        return {self.roles.name_of(role): self._status[role].value for role in Role}

    def snapshot(self) -> dict[str, Any]:
        """Read-only view for status logging and the health endpoint."""
        now = self._clock()
        roles: dict[str, Any] = {}
        for role in Role:
            record = self._active[role]
            last = self._last_activity[role]
            roles[self.roles.name_of(role)] = {
                "status": self._status[role].value,
                "connection_id": record.connection_id if record else None,
                "remote": record.transport.remote_address if record else None,
                "idle_seconds": round(now - last, 3) if last is not None else None,
            }
        return {"roles": roles, "session_count": self.session_count}

    # === Mutations ===

    async def register(self, record: ConnectionRecord, role: Role) -> RegistrationResult:
        """Bind a connection to a role, displacing any previous holder.

        The previous holder is marked superseded, sent a "disconnected"
        notice and closed in the same step the new binding is installed.

        Raises:
            ValueError: If the connection is closed or bound to another role
        """
        async with self._lock:
            if record.state is ConnectionState.CLOSED:
                raise ValueError(f"Connection {record.connection_id} is closed")

            if record.identity is not None:
                if record.identity is not role:
                    raise ValueError(
                        f"Connection {record.connection_id} is already identified as "
                        f"{self.roles.name_of(record.identity)}"
                    )
                # Same claim repeated on the same connection
                return RegistrationResult(changed=False)

            displaced = self._active[role]
            if displaced is not None and displaced is not record:
                displaced.superseded = True
                displaced.mark_closed()
                displaced.request_close(
                    CLOSE_SUPERSEDED,
                    SUPERSEDED_REASON,
                    notice=DisconnectedMessage(reason=SUPERSEDED_REASON),
                )
                logger.info(
                    "Role taken over by new connection",
                    extra={
                        "role": self.roles.name_of(role),
                        "old_connection_id": displaced.connection_id,
                        "new_connection_id": record.connection_id,
                    },
                )

            record.identify(role)
            self._active[role] = record
            self._status[role] = PresenceStatus.CONNECTED
            self._last_activity[role] = record.last_activity

            logger.info(
                "Role registered",
                extra={
                    "role": self.roles.name_of(role),
                    "connection_id": record.connection_id,
                    "session_count": self.session_count,
                },
            )
            return RegistrationResult(changed=True, displaced=displaced)

    async def release(self, record: ConnectionRecord) -> bool:
        """Handle a connection that closed or failed.

        Returns:
            True if the connection was the registered holder of its role
            (presence changed); False for unidentified, superseded or
            already evicted connections
        """
        async with self._lock:
            record.mark_closed()

            role = record.identity
            if role is None or self._active[role] is not record:
                return False

            self._clear(role)

            logger.info(
                "Role released",
                extra={
                    "role": self.roles.name_of(role),
                    "connection_id": record.connection_id,
                    "session_count": self.session_count,
                },
            )
            return True

    def touch(self, role: Role) -> bool:
        """Record qualifying activity for a role.

        Only a role with a registered connection has a liveness timer.
        Runs without awaiting, so it is atomic on the event loop.

        Returns:
            True if the role's timer was reset
        """
        record = self._active[role]
        if record is None:
            return False
        self._last_activity[role] = record.touch()
        return True

    async def evict_idle(self) -> SweepResult:
        """Evict every role idle for longer than the heartbeat timeout.

        Evicted connections are closed with the heartbeat-timeout close code.
        """
        result = SweepResult()
        async with self._lock:
            now = self._clock()
            for role in Role:
                if self._status[role] is not PresenceStatus.CONNECTED:
                    continue

                last = self._last_activity[role]
                record = self._active[role]
                if last is None or record is None:
                    continue

                idle_s = now - last
                if idle_s <= self.heartbeat_timeout_s:
                    continue

                self._clear(role)
                record.mark_closed()
                record.request_close(CLOSE_HEARTBEAT_TIMEOUT, HEARTBEAT_TIMEOUT_REASON)
                result.removed.append(record)

                logger.warning(
                    "Heartbeat timeout, role evicted",
                    extra={
                        "role": self.roles.name_of(role),
                        "connection_id": record.connection_id,
                        "idle_seconds": round(idle_s, 1),
                        "timeout_seconds": self.heartbeat_timeout_s,
                    },
                )
        return result

    async def sweep_stale(self) -> SweepResult:
        """Remove registrations whose transport closed or whose sender broke.

        Also repairs a status left "connected" without a registered
        connection.
        """
        result = SweepResult()
        async with self._lock:
            for role in Role:
                record = self._active[role]
                if record is not None and (record.is_broken or not record.transport.is_connected):
                    self._clear(role)
                    record.mark_closed()
                    result.removed.append(record)
                    logger.warning(
                        "Stale connection removed",
                        extra={
                            "role": self.roles.name_of(role),
                            "connection_id": record.connection_id,
                        },
                    )
                elif record is None and self._status[role] is PresenceStatus.CONNECTED:
                    self._clear(role)
                    result.repaired.append(role)
                    logger.warning(
                        "Presence status repaired",
                        extra={"role": self.roles.name_of(role)},
                    )
        return result

    async def drain(self) -> list[ConnectionRecord]:
        """Unregister every connection (shutdown). Returns the removed ones."""
        async with self._lock:
            removed = self.registered()
            for role in Role:
                self._clear(role)
            for record in removed:
                record.mark_closed()
            return removed

    def _clear(self, role: Role) -> None:
        self._active[role] = None
        self._status[role] = PresenceStatus.DISCONNECTED
        self._last_activity[role] = None
