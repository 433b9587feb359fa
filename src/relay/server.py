"""Relay server with WebSocket transport.

Main server implementation that:
1. Starts the WebSocket transport
2. Provides HTTP health check endpoints
3. Accepts peer connections and welcomes them
4. Routes each inbound message (identification, audio, signals, presence)
5. Runs the heartbeat monitor on a periodic scheduler
6. Notifies and closes every peer on shutdown
"""

import argparse
import asyncio
import logging
import signal
import time
from collections.abc import Callable
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from src.relay.audio_relay import AudioRelay
from src.relay.config import RelayConfig
from src.relay.health import setup_health_routes
from src.relay.heartbeat import HeartbeatMonitor
from src.relay.metrics import RelayMetrics
from src.relay.presence import PresenceBroadcaster
from src.relay.protocol import (
    CLOSE_SERVER_SHUTDOWN,
    ServerShutdownMessage,
    WelcomeMessage,
)
from src.relay.registry import SessionRegistry
from src.relay.roles import RoleSet
from src.relay.routing import MessageRouter
from src.relay.scheduler import PeriodicScheduler
from src.relay.session import ConnectionRecord
from src.relay.transport.base import Transport, TransportSession
from src.relay.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class RelayServer:
    """Owns the registry and every component that reads or mutates it.

    Thread-safety: This class is NOT thread-safe. Use from a single event loop.
    """

    def __init__(
        self,
        config: RelayConfig,
        transport: Transport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize relay server.

        Args:
            config: Server configuration
            transport: Peer transport (WebSocket from config if not given)
            clock: Monotonic time source for liveness tracking
        """
        self.config = config
        self.roles = RoleSet.from_config(config.roles)
        self.metrics = RelayMetrics()
        self._clock = clock

        self.registry = SessionRegistry(
            self.roles, heartbeat_timeout_s=config.heartbeat.timeout_s, clock=clock
        )
        self.presence = PresenceBroadcaster(self.registry, self.metrics)
        self.audio_relay = AudioRelay(self.registry, config.audio, self.metrics)
        self.router = MessageRouter(
            self.registry, self.presence, self.audio_relay, config, self.metrics
        )
        self.monitor = HeartbeatMonitor(
            self.registry, self.presence, config.heartbeat, self.metrics
        )
        self.scheduler = PeriodicScheduler()
        self.monitor.register_tasks(self.scheduler)

        ws_config = config.transport.websocket
        self.transport = transport or WebSocketTransport(
            host=ws_config.host,
            port=ws_config.port,
            max_message_bytes=ws_config.max_message_bytes,
        )

        self._accept_task: asyncio.Task[None] | None = None
        self._connection_tasks: set[asyncio.Task[None]] = set()
        self._health_runner: AppRunner | None = None
        self._stop_event: asyncio.Event | None = None

        logger.info(
            "Relay server initialized",
            extra={
                "role_a": self.roles.name_a,
                "role_b": self.roles.name_b,
                "heartbeat_timeout_s": config.heartbeat.timeout_s,
            },
        )

    @property
    def connection_count(self) -> int:
        """Connections with a running handler."""
        return len(self._connection_tasks)

    async def start(self) -> None:
        """Start transport, health endpoints, scheduler and accept loop.

        Raises:
            OSError: If a port cannot be bound
            RuntimeError: If the transport fails to start
        """
        self._stop_event = asyncio.Event()

        await self.transport.start()

        if self.config.health.enabled:
            await self._start_health_server()

        self.scheduler.start()
        self._accept_task = asyncio.create_task(self._accept_loop(), name="accept-loop")

        logger.info(
            "Relay server ready",
            extra={
                "port": self.config.transport.websocket.port,
                "health_port": self.config.health_port if self.config.health.enabled else None,
            },
        )

    async def serve_forever(self) -> None:
        """Block until request_stop() is called."""
        if self._stop_event is None:
            raise RuntimeError("Relay server is not started")
        await self._stop_event.wait()

    def request_stop(self) -> None:
        """Ask serve_forever() to return (signal handler entry point)."""
        if self._stop_event is not None:
            self._stop_event.set()

    async def shutdown(self) -> None:
        """Notify and close every registered peer, then stop listening."""
        logger.info("Shutting down relay server")

        await self.scheduler.stop()

        if self._accept_task is not None:
            self._accept_task.cancel()
            await asyncio.gather(self._accept_task, return_exceptions=True)
            self._accept_task = None

        records = await self.registry.drain()
        for record in records:
            record.request_close(
                CLOSE_SERVER_SHUTDOWN,
                "Server shutdown",
                notice=ServerShutdownMessage(),
            )

        if records:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*(record.wait_closed() for record in records)),
                    timeout=self.config.graceful_shutdown_timeout_s,
                )
            except TimeoutError:
                logger.warning(
                    "Timed out notifying peers of shutdown",
                    extra={"count": len(records)},
                )

        await self.transport.stop()
        logger.info("Transport stopped")

        if self._health_runner is not None:
            await self._health_runner.cleanup()
            self._health_runner = None
            logger.info("Health check server stopped")

        if self._connection_tasks:
            logger.info(
                "Waiting for connection handlers to finish",
                extra={"count": len(self._connection_tasks)},
            )
            await asyncio.gather(*self._connection_tasks, return_exceptions=True)

        logger.info("Relay server stopped")

    async def _start_health_server(self) -> None:
        health_app = Application()
        setup_health_routes(health_app, self.registry, self.metrics, self.transport)

        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, self.config.health.host, self.config.health_port)
        await site.start()
        self._health_runner = runner
        logger.info("Health check server started", extra={"port": self.config.health_port})

    async def _accept_loop(self) -> None:
        while True:
            session = await self.transport.accept_session()
            task = asyncio.create_task(
                self.handle_connection(session), name=f"connection-{session.session_id}"
            )
            self._connection_tasks.add(task)
            task.add_done_callback(self._connection_tasks.discard)

    async def handle_connection(self, session: TransportSession) -> None:
        """Serve one peer connection until it closes.

        Args:
            session: Accepted transport session
        """
        record = ConnectionRecord(
            session,
            outbox_size=self.config.transport.websocket.outbound_queue_size,
            close_timeout_s=self.config.graceful_shutdown_timeout_s,
            clock=self._clock,
        )
        record.start()
        self.metrics.record_connection_open()

        logger.info(
            "Peer connected",
            extra={
                "connection_id": record.connection_id,
                "session_id": session.session_id,
                "remote": session.remote_address,
            },
        )

        record.send(
            WelcomeMessage(
                message=(
                    f"WebSocket connection established! Send '{self.roles.name_a}' or "
                    f"'{self.roles.name_b}' to identify."
                ),
                server=self.config.transport.websocket.server_name,
                connection_id=record.connection_id,
            )
        )

        try:
            async for raw in session.receive_messages():
                try:
                    await self.router.handle(record, raw)
                except Exception:
                    logger.exception(
                        "Error handling message",
                        extra={"connection_id": record.connection_id},
                    )

        except ConnectionError as e:
            logger.warning(
                "Peer connection failed",
                extra={"connection_id": record.connection_id, "error": str(e)},
            )
        finally:
            if await self.registry.release(record):
                self.presence.broadcast()

            record.request_close()
            await record.wait_closed()
            self.metrics.record_connection_closed(record.metrics.duration_s())

            logger.info("Peer disconnected", extra=record.describe())


async def start_server(config_path: Path | None = None) -> None:
    """Start the relay and run until SIGINT/SIGTERM.

    Args:
        config_path: Path to YAML config file (defaults used if missing)
    """
    config = RelayConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    server = RelayServer(config)
    await server.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, server.request_stop)
        except NotImplementedError:
            # Windows: KeyboardInterrupt ends the loop instead
            pass

    try:
        await server.serve_forever()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
        await server.shutdown()


def main() -> None:
    """Entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Two-party realtime relay server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "relay.yaml",
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Relay server interrupted")


if __name__ == "__main__":
    main()
