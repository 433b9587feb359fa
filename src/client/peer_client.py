"""WebSocket peer client for testing the relay.

Connects to the relay as one of the two roles, keeps the role alive with
periodic heartbeats, prints everything the relay sends, and accepts a few
interactive commands.
"""

import argparse
import asyncio
import base64
import json
import logging
import signal
import sys
import threading
from typing import Any

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

HELP_TEXT = """Commands:
  status              request presence of both roles
  ping                application-level ping
  listen on|off       send a listening-state signal
  audio <text>        send <text> as a base64 audio payload to the other role
  quit                disconnect
"""


class PeerClient:
    """Interactive relay peer."""

    def __init__(
        self,
        server_url: str,
        role: str,
        peer_role: str,
        heartbeat_interval_s: float = 15.0,
        listening_type: str = "bernard_listening",
        verbose: bool = False,
    ) -> None:
        """Initialize peer client.

        Args:
            server_url: WebSocket server URL (e.g., ws://localhost:8080)
            role: Role name to identify as
            peer_role: Name of the other role (audio recipient)
            heartbeat_interval_s: Seconds between heartbeats
            listening_type: Message type of the listening-state signal
            verbose: Enable verbose logging
        """
        self.server_url = server_url
        self.role = role
        self.peer_role = peer_role
        self.heartbeat_interval_s = heartbeat_interval_s
        self.listening_type = listening_type
        self.running = True
        self.received: list[dict[str, Any]] = []
        self._tasks: list[asyncio.Task[None]] = []

        if verbose:
            logging.basicConfig(level=logging.DEBUG)
        else:
            logging.basicConfig(level=logging.INFO)

    def build_command(self, line: str) -> dict[str, Any] | None:
        """Translate an input line into an outbound message.

        Returns:
            Message to send, or None if the line is not a sendable command
        """
        parts = line.strip().split(maxsplit=1)
        if not parts:
            return None

        command = parts[0].lower()
        argument = parts[1] if len(parts) > 1 else ""

        if command == "status":
            return {"type": "status_request"}
        if command == "ping":
            return {"type": "ping"}
        if command == "listen":
            return {
                "type": self.listening_type,
                "listening": argument.lower() in ("on", "true", "1"),
                "from": self.role,
            }
        if command == "audio" and argument:
            return {
                "type": "audio_data",
                "from": self.role,
                "to": self.peer_role,
                "data": base64.b64encode(argument.encode("utf-8")).decode("ascii"),
            }
        return None

    def format_message(self, raw: str) -> str:
        """Render an inbound message for the terminal."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return f"[text] {raw}"

        if not isinstance(data, dict):
            return f"[json] {raw}"

        self.received.append(data)
        msg_type = data.get("type", "?")

        if msg_type == "user_status":
            users = ", ".join(f"{name}={status}" for name, status in data.get("users", {}).items())
            return f"[presence] {users}"
        if msg_type == "audio_data":
            return (
                f"[audio] from={data.get('from')} {len(data.get('data', ''))} chars "
                f"@ {data.get('sampleRate')}Hz {data.get('format')} x{data.get('channels')}"
            )
        if msg_type == "delivery_failed":
            return f"[delivery_failed] {data.get('target')}: {data.get('reason')}"
        if msg_type in ("error", "debug", "welcome", "connection_confirmed"):
            return f"[{msg_type}] {data.get('message', '')}"
        return f"[{msg_type}] {raw}"

    async def heartbeat_loop(self, websocket: ClientConnection) -> None:
        """Send heartbeats until stopped."""
        while self.running:
            await asyncio.sleep(self.heartbeat_interval_s)
            try:
                await websocket.send(json.dumps({"type": "heartbeat", "from": self.role}))
            except websockets.exceptions.ConnectionClosed:
                self.running = False
                break

    async def receive_messages(self, websocket: ClientConnection) -> None:
        """Print inbound messages until the connection closes."""
        try:
            async for raw in websocket:
                text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
                print(self.format_message(text))
        except websockets.exceptions.ConnectionClosed as e:
            print(f"\nConnection closed: {e.rcvd.reason if e.rcvd else 'no close frame'}")
        finally:
            self.running = False

    def _read_stdin(self, loop: asyncio.AbstractEventLoop) -> asyncio.Queue[str]:
        """Queue of stdin lines filled by a daemon reader thread.

        An empty string marks EOF.
        """
        lines: asyncio.Queue[str] = asyncio.Queue()

        def pump() -> None:
            while True:
                line = sys.stdin.readline()
                try:
                    loop.call_soon_threadsafe(lines.put_nowait, line)
                except RuntimeError:
                    return  # Event loop already closed
                if not line:
                    return

        threading.Thread(target=pump, name="stdin-reader", daemon=True).start()
        return lines

    async def input_loop(self, websocket: ClientConnection) -> None:
        """Read commands from stdin."""
        print(HELP_TEXT)
        lines = self._read_stdin(asyncio.get_running_loop())

        while self.running:
            line = await lines.get()

            if not line:  # EOF
                self.running = False
                break

            if line.strip().lower() in ("quit", "exit"):
                self.running = False
                break

            message = self.build_command(line)
            if message is None:
                print(HELP_TEXT)
                continue

            await websocket.send(json.dumps(message))

    def stop(self) -> None:
        """Stop the client and cancel its loops (signal handler entry point)."""
        self.running = False
        for task in self._tasks:
            task.cancel()

    async def run(self) -> None:
        """Connect, identify, and run the heartbeat, receive and input loops."""
        try:
            async with websockets.connect(self.server_url) as websocket:
                logger.info(f"Connected to {self.server_url} as {self.role}")
                await websocket.send(json.dumps({"type": "identify", "role": self.role}))

                self._tasks = [
                    asyncio.create_task(self.heartbeat_loop(websocket)),
                    asyncio.create_task(self.receive_messages(websocket)),
                    asyncio.create_task(self.input_loop(websocket)),
                ]

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGINT, signal.SIGTERM):
                    loop.add_signal_handler(sig, self.stop)

                try:
                    await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    self.stop()
                    await asyncio.gather(*self._tasks, return_exceptions=True)
                    for sig in (signal.SIGINT, signal.SIGTERM):
                        loop.remove_signal_handler(sig)

        except OSError as e:
            logger.error(f"Client error: {e}")
            sys.exit(1)


def main() -> None:
    """Main entry point for the peer client."""
    parser = argparse.ArgumentParser(description="Interactive peer client for the relay")
    parser.add_argument(
        "--url",
        type=str,
        default="ws://localhost:8080",
        help="WebSocket server URL (default: ws://localhost:8080)",
    )
    parser.add_argument("--role", type=str, default="bernard", help="Role to identify as")
    parser.add_argument("--peer", type=str, default="liliann", help="The other role's name")
    parser.add_argument(
        "--heartbeat",
        type=float,
        default=15.0,
        help="Heartbeat interval in seconds (default: 15)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    args = parser.parse_args()

    client = PeerClient(
        server_url=args.url,
        role=args.role,
        peer_role=args.peer,
        heartbeat_interval_s=args.heartbeat,
        verbose=args.verbose,
    )

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
