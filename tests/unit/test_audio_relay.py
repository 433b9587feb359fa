"""Unit tests for audio forwarding and presence fan-out."""

import pytest

from src.relay.audio_relay import (
    RECIPIENT_NOT_CONNECTED,
    RECIPIENT_QUEUE_FULL,
    AudioRelay,
    RelayOutcome,
)
from src.relay.config import AudioConfig, RolesConfig
from src.relay.metrics import RelayMetrics
from src.relay.presence import PresenceBroadcaster
from src.relay.protocol import AudioDataMessage, PongMessage
from src.relay.registry import SessionRegistry
from src.relay.roles import Role, RoleSet
from src.relay.session import ConnectionRecord
from tests.helpers.relay_fakes import FakeTransportSession, connect, sent


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry(RoleSet.from_config(RolesConfig()))


@pytest.fixture
def metrics() -> RelayMetrics:
    return RelayMetrics()


@pytest.fixture
def relay(registry: SessionRegistry, metrics: RelayMetrics) -> AudioRelay:
    return AudioRelay(registry, AudioConfig(), metrics)


def audio(**fields: object) -> AudioDataMessage:
    """Inbound audio message from bernard to liliann, overridable."""
    data: dict[str, object] = {
        "type": "audio_data",
        "from": "bernard",
        "to": "liliann",
        "data": "UklGRg==",
    }
    data.update(fields)
    return AudioDataMessage.model_validate(data)


class TestAudioRouting:
    """Test successful relays."""

    @pytest.mark.asyncio
    async def test_relay_with_defaults(
        self, registry: SessionRegistry, relay: AudioRelay, metrics: RelayMetrics
    ) -> None:
        """Test B receives the exact payload with default metadata; A receives nothing."""
        a, _ = await connect(registry, Role.A)
        b, _ = await connect(registry, Role.B)

        outcome = relay.relay(Role.A, audio())

        assert outcome is RelayOutcome.DELIVERED
        received = await sent(b)
        assert len(received) == 1
        envelope = received[0]
        assert envelope["type"] == "audio_data"
        assert envelope["from"] == "bernard"
        assert envelope["to"] == "liliann"
        assert envelope["data"] == "UklGRg=="
        assert envelope["sampleRate"] == 44100
        assert envelope["format"] == "PCM_16BIT"
        assert envelope["channels"] == 1
        assert "timestamp" in envelope
        assert await sent(a) == []
        assert metrics.get_summary()["audio_relayed"] == 1

    @pytest.mark.asyncio
    async def test_relay_keeps_declared_metadata(
        self, registry: SessionRegistry, relay: AudioRelay
    ) -> None:
        """Test declared metadata is forwarded unchanged."""
        await connect(registry, Role.A)
        b, _ = await connect(registry, Role.B)

        relay.relay(Role.A, audio(sampleRate=16000, format="OPUS", channels=2))

        envelope = (await sent(b))[0]
        assert envelope["sampleRate"] == 16000
        assert envelope["format"] == "OPUS"
        assert envelope["channels"] == 2

    @pytest.mark.asyncio
    async def test_relay_b_to_a(self, registry: SessionRegistry, relay: AudioRelay) -> None:
        """Test audio may flow from B to A."""
        a, _ = await connect(registry, Role.A)
        await connect(registry, Role.B)

        outcome = relay.relay(Role.B, audio(**{"from": "liliann", "to": "bernard"}))

        assert outcome is RelayOutcome.DELIVERED
        assert (await sent(a))[0]["from"] == "liliann"


class TestDeliveryFailure:
    """Test recipient-unavailable reporting."""

    @pytest.mark.asyncio
    async def test_recipient_not_connected(
        self, registry: SessionRegistry, relay: AudioRelay, metrics: RelayMetrics
    ) -> None:
        """Test the sender is told when the recipient is absent."""
        a, _ = await connect(registry, Role.A)

        outcome = relay.relay(Role.A, audio())

        assert outcome is RelayOutcome.DELIVERY_FAILED
        notices = await sent(a)
        assert len(notices) == 1
        assert notices[0]["type"] == "delivery_failed"
        assert notices[0]["target"] == "liliann"
        assert notices[0]["reason"] == RECIPIENT_NOT_CONNECTED
        assert metrics.get_summary()["delivery_failures"] == 1

    @pytest.mark.asyncio
    async def test_recipient_closing(self, registry: SessionRegistry, relay: AudioRelay) -> None:
        """Test a recipient whose transport is down counts as not connected."""
        a, _ = await connect(registry, Role.A)
        _b, b_session = await connect(registry, Role.B)
        b_session.connected = False

        assert relay.relay(Role.A, audio()) is RelayOutcome.DELIVERY_FAILED
        assert (await sent(a))[0]["reason"] == RECIPIENT_NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_recipient_sender_broken(
        self, registry: SessionRegistry, relay: AudioRelay
    ) -> None:
        """Test a recipient whose outbound sender died is reported, not fed."""
        a, _ = await connect(registry, Role.A)
        b, b_session = await connect(registry, Role.B)
        b_session.send_error = RuntimeError("encoder failed")
        b.send(PongMessage())
        await b.wait_closed()

        assert relay.relay(Role.A, audio()) is RelayOutcome.DELIVERY_FAILED
        assert (await sent(a))[0]["reason"] == RECIPIENT_NOT_CONNECTED
        assert b_session.sent == []

    @pytest.mark.asyncio
    async def test_recipient_queue_full(self, registry: SessionRegistry, relay: AudioRelay) -> None:
        """Test a backed-up recipient is reported instead of blocking the sender."""
        a, _ = await connect(registry, Role.A)
        b = ConnectionRecord(FakeTransportSession(), outbox_size=8)  # sender not started
        await registry.register(b, Role.B)
        for _ in range(8):
            b.send(PongMessage())

        outcome = relay.relay(Role.A, audio())

        assert outcome is RelayOutcome.DELIVERY_FAILED
        assert (await sent(a))[0]["reason"] == RECIPIENT_QUEUE_FULL


class TestPolicyDrops:
    """Test silently dropped chunks."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "fields",
        [
            {"data": ""},
            {"to": "eve"},
            {"to": None},
            {"from": "liliann"},
            {"from": None},
            {"data": None},
            {"data": 12},
            {"to": 7},
            {"from": ["bernard"]},
        ],
    )
    async def test_dropped_without_reply(
        self,
        registry: SessionRegistry,
        relay: AudioRelay,
        metrics: RelayMetrics,
        fields: dict[str, object],
    ) -> None:
        """Test invalid chunks are dropped and nobody hears about it."""
        a, _ = await connect(registry, Role.A)
        b, _ = await connect(registry, Role.B)

        outcome = relay.relay(Role.A, audio(**fields))

        assert outcome is RelayOutcome.DROPPED
        assert await sent(a) == []
        assert await sent(b) == []
        assert metrics.get_summary()["audio_dropped"] == 1


class TestPresenceBroadcaster:
    """Test presence fan-out."""

    @pytest.mark.asyncio
    async def test_broadcast_to_both(
        self, registry: SessionRegistry, metrics: RelayMetrics
    ) -> None:
        """Test both registered connections receive the same status."""
        a, _ = await connect(registry, Role.A)
        b, _ = await connect(registry, Role.B)
        presence = PresenceBroadcaster(registry, metrics)

        assert presence.broadcast() == 2

        for record in (a, b):
            message = (await sent(record))[0]
            assert message["type"] == "user_status"
            assert message["users"] == {"bernard": "connected", "liliann": "connected"}
            assert message["sessions"] == 2
        assert metrics.get_summary()["presence_broadcasts"] == 1
        assert metrics.get_summary()["sessions_active"] == 2

    @pytest.mark.asyncio
    async def test_broadcast_reports_disconnected_role(self, registry: SessionRegistry) -> None:
        """Test the remaining peer learns the other role is gone."""
        a, _ = await connect(registry, Role.A)
        b, _ = await connect(registry, Role.B)
        await registry.release(b)

        PresenceBroadcaster(registry).broadcast()

        message = (await sent(a))[-1]
        assert message["users"] == {"bernard": "connected", "liliann": "disconnected"}

    @pytest.mark.asyncio
    async def test_broadcast_survives_recipient_failure(self, registry: SessionRegistry) -> None:
        """Test one failing recipient does not stop delivery to the other."""
        a, _ = await connect(registry, Role.A)
        b, _ = await connect(registry, Role.B)

        def explode(message: object) -> bool:
            raise RuntimeError("boom")

        a.send = explode  # type: ignore[method-assign]

        assert PresenceBroadcaster(registry).broadcast() == 1
        assert (await sent(b))[0]["type"] == "user_status"

    def test_broadcast_with_nobody_connected(self, registry: SessionRegistry) -> None:
        """Test broadcasting to an empty registry is harmless."""
        assert PresenceBroadcaster(registry).broadcast() == 0

    def test_status_message(self, registry: SessionRegistry) -> None:
        """Test status message reflects the registry."""
        message = PresenceBroadcaster(registry).status_message()
        assert message.users == {"bernard": "disconnected", "liliann": "disconnected"}
        assert message.sessions == 0
