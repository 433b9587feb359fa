"""Transport contract between the relay core and the network.

The core only needs three things from a peer connection: push a text frame,
iterate inbound frames, and close with a status code. A Transport hands out
such sessions as peers arrive. Anything below that (sockets, framing, TLS)
stays behind these two classes.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator


class TransportSession(ABC):
    """One peer connection as seen by the relay."""

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Transport-assigned id, used only in logs."""

    @property
    @abstractmethod
    def remote_address(self) -> str | None:
        """`host:port` of the peer when the transport knows it."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """False once either side has closed or the link broke."""

    @abstractmethod
    async def send_text(self, message: str) -> None:
        """Write a single frame.

        Raises:
            ConnectionError: The peer is gone
        """

    @abstractmethod
    def receive_messages(self) -> AsyncIterator[str]:
        """Inbound frames in arrival order.

        Iteration stops on an orderly close.

        Raises:
            ConnectionError: The link failed mid-stream
        """

    @abstractmethod
    async def ping(self) -> None:
        """Emit a protocol-level keepalive.

        Raises:
            ConnectionError: The peer is gone
        """

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Close with a status code. Safe to call more than once."""


class Transport(ABC):
    """Listener that produces TransportSessions."""

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Short name for logs, e.g. 'websocket'."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """True between a successful start() and stop()."""

    @abstractmethod
    async def start(self) -> None:
        """Begin listening.

        Raises:
            OSError: The address could not be bound
            RuntimeError: Already started, or any other startup failure
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop listening and close peers still attached. No-op when stopped."""

    @abstractmethod
    async def accept_session(self) -> TransportSession:
        """Wait for the next peer.

        Raises:
            RuntimeError: The transport is not running
        """
