"""WebSocket implementation of the relay transport.

Every upgrade request becomes a WebSocketSession pushed onto an accept queue;
the connection handler then parks on the socket until it closes so the
websockets library keeps the connection alive. Keepalive pings are left to
the relay's own scheduler, not the library.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.protocol import State

from src.relay.transport.base import Transport, TransportSession

logger = logging.getLogger(__name__)


class WebSocketSession(TransportSession):
    """Adapter from a websockets ServerConnection to TransportSession."""

    def __init__(self, websocket: ServerConnection, session_id: str) -> None:
        self._ws = websocket
        self._id = session_id
        self._closed = False

        logger.debug(
            "WebSocket session created",
            extra={"session_id": session_id, "remote": self.remote_address},
        )

    @property
    def session_id(self) -> str:
        return self._id

    @property
    def remote_address(self) -> str | None:
        peer = self._ws.remote_address
        return f"{peer[0]}:{peer[1]}" if peer else None

    @property
    def is_connected(self) -> bool:
        return not self._closed and self._ws.state is State.OPEN

    def _require_open(self) -> None:
        if not self.is_connected:
            raise ConnectionError(f"WebSocket session {self._id} is not open")

    async def send_text(self, message: str) -> None:
        self._require_open()
        try:
            await self._ws.send(message)
        except websockets.exceptions.ConnectionClosed as e:
            self._closed = True
            raise ConnectionError(f"Peer went away during send: {e}") from e

    async def receive_messages(self) -> AsyncIterator[str]:
        """Yield inbound frames as text.

        Binary frames are decoded as UTF-8 (invalid bytes replaced), since
        some peers send their role token as bytes.
        """
        try:
            async for frame in self._ws:
                yield frame if isinstance(frame, str) else frame.decode("utf-8", errors="replace")
        except websockets.exceptions.ConnectionClosedOK:
            logger.info("Peer closed WebSocket", extra={"session_id": self._id})
        except websockets.exceptions.ConnectionClosedError as e:
            self._closed = True
            raise ConnectionError(f"WebSocket {self._id} failed: {e}") from e

        # Iteration only ends once the socket has closed
        self._closed = True

    async def ping(self) -> None:
        self._require_open()
        try:
            # Fire the ping; the returned pong waiter is not awaited
            await self._ws.ping()
        except websockets.exceptions.ConnectionClosed as e:
            self._closed = True
            raise ConnectionError(f"Peer went away during ping: {e}") from e

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True

        logger.info(
            "Closing WebSocket",
            extra={"session_id": self._id, "code": code, "reason": reason},
        )
        try:
            await self._ws.close(code=code, reason=reason)
        except Exception as e:
            logger.warning(
                "WebSocket close handshake failed",
                extra={"session_id": self._id, "error": str(e)},
            )


class WebSocketTransport(Transport):
    """Listening WebSocket server feeding sessions to the relay."""

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        max_message_bytes: int = 4 * 2**20,
    ) -> None:
        """Configure the listener (nothing is bound until start()).

        Args:
            host: Interface to bind
            port: TCP port to bind
            max_message_bytes: Largest inbound frame accepted; audio chunks
                arrive base64-encoded so this bounds chunk size
        """
        self.host = host
        self.port = port
        self.max_message_bytes = max_message_bytes

        self._server: Server | None = None
        self._accepted: asyncio.Queue[WebSocketSession] = asyncio.Queue()
        self._live: dict[str, WebSocketSession] = {}

    @property
    def transport_type(self) -> str:
        return "websocket"

    @property
    def is_running(self) -> bool:
        return self._server is not None

    @property
    def open_sessions(self) -> int:
        """Sessions whose socket is still attached to the server."""
        return len(self._live)

    async def start(self) -> None:
        if self._server is not None:
            raise RuntimeError("WebSocket transport is already running")

        try:
            self._server = await serve(
                self._on_connect,
                self.host,
                self.port,
                max_size=self.max_message_bytes,
                ping_interval=None,
            )
        except OSError as e:
            logger.error(
                "Cannot bind WebSocket listener",
                extra={"host": self.host, "port": self.port, "error": str(e)},
            )
            raise
        except Exception as e:
            raise RuntimeError(f"WebSocket listener failed to start: {e}") from e

        logger.info(
            "WebSocket listener started",
            extra={
                "host": self.host,
                "port": self.port,
                "max_message_bytes": self.max_message_bytes,
            },
        )

    async def stop(self) -> None:
        server, self._server = self._server, None
        if server is None:
            return

        # Closes attached peers with 1001 (going away)
        server.close()
        await server.wait_closed()
        logger.info("WebSocket listener stopped", extra={"port": self.port})

    async def accept_session(self) -> TransportSession:
        if self._server is None:
            raise RuntimeError("WebSocket transport is not running")
        return await self._accepted.get()

    async def _on_connect(self, websocket: ServerConnection) -> None:
        session = WebSocketSession(websocket, f"ws-{uuid.uuid4().hex[:12]}")
        self._live[session.session_id] = session
        logger.info(
            "Peer connected to WebSocket listener",
            extra={"session_id": session.session_id, "remote": session.remote_address},
        )

        await self._accepted.put(session)
        try:
            # Returning from this handler would close the socket
            await websocket.wait_closed()
        finally:
            self._live.pop(session.session_id, None)
            logger.debug(
                "WebSocket handler finished",
                extra={"session_id": session.session_id},
            )
