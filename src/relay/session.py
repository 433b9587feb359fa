"""Per-connection state.

A ConnectionRecord wraps one transport session: its lifecycle state, the role
it identified as, when it was last active, and a bounded outbound queue
drained by a dedicated sender task so that sending never blocks the caller.
"""

import asyncio
import json
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from src.relay.protocol import CLOSE_INTERNAL_ERROR, RelayMessage
from src.relay.roles import Role
from src.relay.transport.base import TransportSession

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    """Connection lifecycle states.

    State Transitions:
    - UNIDENTIFIED → IDENTIFIED (first valid role claim)
    - UNIDENTIFIED → CLOSED (closed before identifying)
    - IDENTIFIED → CLOSED (close, error, eviction or takeover)
    """

    UNIDENTIFIED = "unidentified"
    IDENTIFIED = "identified"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[ConnectionState, set[ConnectionState]] = {
    ConnectionState.UNIDENTIFIED: {ConnectionState.IDENTIFIED, ConnectionState.CLOSED},
    ConnectionState.IDENTIFIED: {ConnectionState.CLOSED},
    ConnectionState.CLOSED: set(),  # Terminal state
}


def new_connection_id() -> str:
    """Opaque correlation token, e.g. conn_1718000000000_k3j9x2a1b."""
    return f"conn_{int(time.time() * 1000)}_{secrets.token_hex(5)[:9]}"


@dataclass
class ConnectionMetrics:
    """Per-connection traffic counters."""

    messages_received: int = 0
    messages_sent: int = 0
    messages_dropped: int = 0
    opened_ts: float = field(default_factory=time.monotonic)
    closed_ts: float | None = None

    def duration_s(self) -> float:
        return (self.closed_ts or time.monotonic()) - self.opened_ts


@dataclass(frozen=True)
class _CloseRequest:
    code: int
    reason: str


# Wakes an idle sender loop after a close request
_WAKE = object()

SEND_FAILURE_REASON = "Send failure"


class ConnectionRecord:
    """State of one peer connection.

    Thread-safety: NOT thread-safe. Use from the event loop that owns it.
    """

    def __init__(
        self,
        transport: TransportSession,
        connection_id: str | None = None,
        outbox_size: int = 256,
        close_timeout_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize connection record.

        Args:
            transport: Underlying transport session (send/receive/close handle)
            connection_id: Correlation token (generated if not given)
            outbox_size: Maximum queued outbound messages before dropping
            close_timeout_s: Time allowed to flush pending messages on close
            clock: Monotonic time source
        """
        self.transport = transport
        self.connection_id = connection_id or new_connection_id()
        self.identity: Role | None = None
        self.state = ConnectionState.UNIDENTIFIED
        self.superseded = False
        self.metrics = ConnectionMetrics()

        self._clock = clock
        self.last_activity: float = clock()

        self._outbox: asyncio.Queue[Any] = asyncio.Queue(maxsize=outbox_size)
        self._close_timeout_s = close_timeout_s
        self._close_request: _CloseRequest | None = None
        self._sender_task: asyncio.Task[None] | None = None
        self._broken = False

    @property
    def is_open(self) -> bool:
        """True while queued messages can still reach the peer."""
        return (
            self._close_request is None and not self._broken and self.transport.is_connected
        )

    @property
    def is_broken(self) -> bool:
        """The sender task ended without a close request; sends go nowhere."""
        return self._broken

    @property
    def close_requested(self) -> bool:
        return self._close_request is not None

    def start(self) -> None:
        """Start the sender task. Must be called from a running event loop."""
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(
                self._sender_loop(), name=f"sender-{self.connection_id}"
            )

    # === Lifecycle ===

    def transition_state(self, new_state: ConnectionState) -> None:
        """Transition to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.debug(
            "Connection state transition",
            extra={
                "connection_id": self.connection_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    def identify(self, role: Role) -> None:
        """Bind this connection to a role. Allowed exactly once.

        Raises:
            ValueError: If the connection is already identified or closed
        """
        self.transition_state(ConnectionState.IDENTIFIED)
        self.identity = role
        self.last_activity = self._clock()

    def mark_closed(self) -> None:
        """Move to CLOSED. Idempotent."""
        if self.state is ConnectionState.CLOSED:
            return
        self.transition_state(ConnectionState.CLOSED)
        self.metrics.closed_ts = time.monotonic()

    def touch(self) -> float:
        """Record qualifying activity and return its timestamp."""
        self.last_activity = self._clock()
        return self.last_activity

    # === Outbound ===

    def send(self, message: RelayMessage | dict[str, Any]) -> bool:
        """Queue a message for delivery without waiting.

        Returns:
            True if queued, False if the connection is closing, its sender
            is broken or its queue is full (the message is dropped)
        """
        if self._close_request is not None or self._broken:
            return False

        return self._enqueue(_serialize(message))

    def request_close(
        self, code: int = 1000, reason: str = "", notice: RelayMessage | None = None
    ) -> None:
        """Close after flushing queued messages (and an optional final notice).

        Non-blocking. If the flush does not finish within the close timeout,
        pending messages are discarded and the transport is closed anyway.
        """
        if self._close_request is not None:
            return

        if notice is not None:
            self._enqueue(_serialize(notice))

        self._close_request = _CloseRequest(code=code, reason=reason)

        try:
            self._outbox.put_nowait(_WAKE)
        except asyncio.QueueFull:
            pass  # Sender is busy and will see the request when it drains

        if self._sender_task is not None and not self._sender_task.done():
            asyncio.get_running_loop().call_later(
                self._close_timeout_s, self._cancel_sender
            )

        logger.info(
            "Connection close requested",
            extra={"connection_id": self.connection_id, "code": code, "reason": reason},
        )

    async def flush(self, timeout: float | None = None) -> None:
        """Wait until every queued message has been handed to the transport."""
        if self._sender_task is None or self._sender_task.done():
            return
        await asyncio.wait_for(self._outbox.join(), timeout=timeout)

    async def wait_closed(self) -> None:
        """Wait for the sender task to finish after a close request."""
        if self._sender_task is not None:
            await asyncio.gather(self._sender_task, return_exceptions=True)

    def _enqueue(self, payload: str) -> bool:
        try:
            self._outbox.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            self.metrics.messages_dropped += 1
            logger.warning(
                "Outbound queue full, dropping message",
                extra={
                    "connection_id": self.connection_id,
                    "queue_size": self._outbox.qsize(),
                },
            )
            return False

    def _cancel_sender(self) -> None:
        if self._sender_task is not None and not self._sender_task.done():
            logger.warning(
                "Close flush timed out, closing immediately",
                extra={"connection_id": self.connection_id},
            )
            self._sender_task.cancel()

    async def _sender_loop(self) -> None:
        """Drain the outbound queue to the transport.

        Runs for the lifetime of the connection and performs the transport
        close once a close request has been flushed. If the loop ends for
        any other reason the record is marked broken and a still-attached
        transport is closed.
        """
        failure: Exception | None = None
        try:
            while True:
                item = await self._outbox.get()
                try:
                    if item is not _WAKE:
                        await self.transport.send_text(item)
                        self.metrics.messages_sent += 1
                except ConnectionError:
                    # Transport connection lost
                    break
                finally:
                    self._outbox.task_done()

                if self._close_request is not None and self._outbox.empty():
                    break

        except asyncio.CancelledError:
            # Close timeout or shutdown
            pass
        except Exception as e:
            failure = e
            logger.error(
                "Error in connection sender loop",
                extra={"connection_id": self.connection_id, "error": str(e)},
                exc_info=True,
            )
        finally:
            if self._close_request is None:
                self._broken = True
            self._discard_pending()

            if self._close_request is not None:
                await self.transport.close(self._close_request.code, self._close_request.reason)
            elif failure is not None and self.transport.is_connected:
                await self.transport.close(CLOSE_INTERNAL_ERROR, SEND_FAILURE_REASON)

    def _discard_pending(self) -> None:
        while not self._outbox.empty():
            try:
                self._outbox.get_nowait()
                self._outbox.task_done()
            except asyncio.QueueEmpty:
                break

    def describe(self) -> dict[str, Any]:
        """Diagnostic summary for logging."""
        return {
            "connection_id": self.connection_id,
            "session_id": self.transport.session_id,
            "remote": self.transport.remote_address,
            "state": self.state.value,
            "identity": self.identity.value if self.identity else None,
            "messages_received": self.metrics.messages_received,
            "messages_sent": self.metrics.messages_sent,
            "messages_dropped": self.metrics.messages_dropped,
            "duration_s": self.metrics.duration_s(),
        }


def _serialize(message: RelayMessage | dict[str, Any]) -> str:
    if isinstance(message, RelayMessage):
        return message.to_json()
    return json.dumps(message)
