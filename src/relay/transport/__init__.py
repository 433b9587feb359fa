"""Transport layer for relay peer connections.

Provides abstraction over the transport carrying peer messages.
"""

from src.relay.transport.base import Transport, TransportSession
from src.relay.transport.websocket_transport import (
    WebSocketSession,
    WebSocketTransport,
)

__all__ = [
    "Transport",
    "TransportSession",
    "WebSocketSession",
    "WebSocketTransport",
]
