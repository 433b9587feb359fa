"""Two-party realtime relay.

Connects exactly two peer roles over WebSocket, relays audio and activity
signals between them, and reports presence with heartbeat-based liveness.
"""

__version__ = "2.0.0"
