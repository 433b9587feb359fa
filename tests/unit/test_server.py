"""Tests for RelayServer connection handling and shutdown.

Runs the full relay core over fake transport sessions: welcome, identify,
presence on connect and disconnect, transport failures and the shutdown
sequence.
"""

import asyncio
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest

from src.relay.config import RelayConfig
from src.relay.protocol import CLOSE_SERVER_SHUTDOWN
from src.relay.roles import Role
from src.relay.server import RelayServer
from tests.helpers.relay_fakes import FakeClock, FakeTransport, FakeTransportSession


async def until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until predicate holds."""

    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def server(transport: FakeTransport) -> RelayServer:
    config = RelayConfig.model_validate(
        {"health": {"enabled": False}, "graceful_shutdown_timeout_s": 1.0}
    )
    return RelayServer(config, transport=transport, clock=FakeClock(start=0.0))


class TestConnectionHandling:
    """Test one connection's lifetime."""

    @pytest.mark.asyncio
    async def test_welcome(self, server: RelayServer) -> None:
        """Test a new connection is welcomed before identifying."""
        session = FakeTransportSession()
        task = asyncio.create_task(server.handle_connection(session))

        await until(lambda: len(session.sent) == 1)
        welcome = session.sent_json()[0]

        assert welcome["type"] == "welcome"
        assert welcome["server"] == "Peer Relay Server v2.0"
        assert welcome["features"] == ["audio_streaming", "real_time_communication"]
        assert welcome["connectionId"].startswith("conn_")
        assert "bernard" in welcome["message"]

        session.end()
        await task

    @pytest.mark.asyncio
    async def test_identify_and_disconnect(self, server: RelayServer) -> None:
        """Test presence follows both peers in and one peer out."""
        a = FakeTransportSession()
        b = FakeTransportSession()
        task_a = asyncio.create_task(server.handle_connection(a))
        task_b = asyncio.create_task(server.handle_connection(b))

        a.feed("bernard")
        await until(lambda: server.registry.get(Role.A) is not None)
        b.feed('{"type": "identify", "role": "liliann"}')
        await until(lambda: server.registry.session_count == 2)

        a.end()
        await task_a

        def b_saw_a_leave() -> bool:
            updates = [m for m in b.sent_json() if m["type"] == "user_status"]
            return bool(updates) and updates[-1]["users"]["bernard"] == "disconnected"

        await until(b_saw_a_leave)
        assert server.registry.get(Role.A) is None
        assert server.registry.get(Role.B) is not None
        assert server.metrics.get_summary()["connections_open"] == 1

        b.end()
        await task_b
        assert server.registry.session_count == 0
        assert server.metrics.get_summary()["connections_open"] == 0

    @pytest.mark.asyncio
    async def test_audio_end_to_end(self, server: RelayServer) -> None:
        """Test audio from A arrives at B through the full handler."""
        a = FakeTransportSession()
        b = FakeTransportSession()
        tasks = [
            asyncio.create_task(server.handle_connection(a)),
            asyncio.create_task(server.handle_connection(b)),
        ]
        a.feed("bernard")
        b.feed("liliann")
        await until(lambda: server.registry.session_count == 2)

        a.feed('{"type": "audio_data", "from": "bernard", "to": "liliann", "data": "AAAA"}')

        await until(lambda: "audio_data" in b.sent_types())
        envelope = [m for m in b.sent_json() if m["type"] == "audio_data"][0]
        assert envelope["data"] == "AAAA"
        assert envelope["sampleRate"] == 44100

        a.end()
        b.end()
        await asyncio.gather(*tasks)

    @pytest.mark.asyncio
    async def test_transport_failure_treated_as_close(self, server: RelayServer) -> None:
        """Test a broken transport releases the role like a close."""
        session = FakeTransportSession()
        task = asyncio.create_task(server.handle_connection(session))
        session.feed("liliann")
        await until(lambda: server.registry.get(Role.B) is not None)

        session.end(ConnectionError("connection reset"))
        await task

        assert server.registry.get(Role.B) is None

    @pytest.mark.asyncio
    async def test_handler_error_keeps_connection(self, server: RelayServer) -> None:
        """Test an unexpected routing error does not end the connection."""
        handle = AsyncMock(side_effect=[RuntimeError("boom"), None])
        server.router.handle = handle  # type: ignore[method-assign]
        session = FakeTransportSession()
        task = asyncio.create_task(server.handle_connection(session))

        session.feed("first", "second")
        await until(lambda: handle.call_count == 2)

        session.end()
        await task


class TestLifecycle:
    """Test server start and shutdown."""

    @pytest.mark.asyncio
    async def test_serve_forever_requires_start(self, server: RelayServer) -> None:
        """Test serve_forever refuses to run before start."""
        with pytest.raises(RuntimeError, match="not started"):
            await server.serve_forever()

    @pytest.mark.asyncio
    async def test_accepts_connections(self, server: RelayServer, transport: FakeTransport) -> None:
        """Test accepted sessions get a handler."""
        await server.start()
        session = FakeTransportSession()

        transport.connect(session)

        await until(lambda: "welcome" in session.sent_types())
        assert server.connection_count == 1
        assert server.scheduler.is_running

        await server.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_notifies_registered_peers(
        self, server: RelayServer, transport: FakeTransport
    ) -> None:
        """Test every registered peer gets a shutdown notice and close."""
        await server.start()
        a = FakeTransportSession()
        b = FakeTransportSession()
        transport.connect(a)
        transport.connect(b)
        a.feed("bernard")
        b.feed("liliann")
        await until(lambda: server.registry.session_count == 2)

        await server.shutdown()

        for session in (a, b):
            assert session.sent_types()[-1] == "server_shutdown"
            assert session.close_calls[0] == (CLOSE_SERVER_SHUTDOWN, "Server shutdown")
        assert not transport.is_running
        assert not server.scheduler.is_running
        assert server.registry.session_count == 0

    @pytest.mark.asyncio
    async def test_request_stop(self, server: RelayServer) -> None:
        """Test request_stop ends serve_forever."""
        await server.start()
        serving = asyncio.create_task(server.serve_forever())

        server.request_stop()

        await asyncio.wait_for(serving, timeout=1.0)
        await server.shutdown()
