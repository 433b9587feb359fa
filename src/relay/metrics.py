"""Prometheus-compatible metrics for relay observability.

Tracks connection churn, presence, relayed traffic and liveness evictions.
Metrics are collected in-memory and exposed via the /metrics endpoint in
Prometheus exposition format and via /metrics/summary as JSON.

The collector is owned by the server and passed to the components that
record into it; there is no process-global instance.
"""

import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

# Connection lifetimes from a quick reconnect to a long session
DURATION_BUCKETS: tuple[float, ...] = (
    1.0,
    10.0,
    45.0,  # default heartbeat timeout
    60.0,
    300.0,
    900.0,
    3600.0,
    14400.0,
    float("inf"),
)


@dataclass
class Counter:
    """Monotonic total."""

    name: str
    help: str
    value: float = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        self.value += amount

    def render(self) -> list[str]:
        return [
            f"# HELP {self.name} {self.help}",
            f"# TYPE {self.name} counter",
            f"{self.name} {self.value}",
        ]


@dataclass
class Gauge:
    """Point-in-time level."""

    name: str
    help: str
    value: float = 0.0

    def set(self, value: float) -> None:
        self.value = value

    def inc(self, amount: float = 1.0) -> None:
        self.value += amount

    def dec(self, amount: float = 1.0) -> None:
        self.value -= amount

    def render(self) -> list[str]:
        return [
            f"# HELP {self.name} {self.help}",
            f"# TYPE {self.name} gauge",
            f"{self.name} {self.value}",
        ]


@dataclass
class Histogram:
    """Cumulative bucket counts plus sum and count."""

    name: str
    help: str
    bounds: tuple[float, ...] = DURATION_BUCKETS
    bucket_counts: list[int] = field(default_factory=list)
    sum: float = 0.0
    count: int = 0

    def __post_init__(self) -> None:
        if not self.bucket_counts:
            self.bucket_counts = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        self.sum += value
        self.count += 1
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.bucket_counts[i] += 1

    def render(self) -> list[str]:
        lines = [f"# HELP {self.name} {self.help}", f"# TYPE {self.name} histogram"]
        lines.extend(
            f'{self.name}_bucket{{le="{bound}"}} {n}'
            for bound, n in zip(self.bounds, self.bucket_counts, strict=True)
        )
        lines.append(f"{self.name}_sum {self.sum}")
        lines.append(f"{self.name}_count {self.count}")
        return lines


class RelayMetrics:
    """Metrics collector for one relay server.

    Thread-safety: every method takes the collector's lock, so the HTTP side
    can export while the event loop records.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()

        self.connections_total = Counter(
            "relay_connections_total", "Total number of accepted transport connections"
        )
        self.connections_open = Gauge(
            "relay_connections_open", "Number of transport connections currently open"
        )
        self.sessions_active = Gauge(
            "relay_sessions_active", "Number of roles with a registered connection (0-2)"
        )
        self.identifications = Counter(
            "relay_identifications_total", "Total number of accepted role claims"
        )
        self.takeovers = Counter(
            "relay_takeovers_total",
            "Total number of connections displaced by a newer connection",
        )
        self.connection_duration = Histogram(
            "relay_connection_duration_seconds", "Transport connection lifetime in seconds"
        )

        self.messages_received = Counter(
            "relay_messages_received_total", "Total number of inbound messages"
        )
        self.audio_relayed = Counter(
            "relay_audio_relayed_total", "Total number of audio chunks forwarded to a recipient"
        )
        self.audio_dropped = Counter(
            "relay_audio_dropped_total", "Total number of audio chunks dropped by validation"
        )
        self.delivery_failures = Counter(
            "relay_delivery_failures_total",
            "Total number of audio chunks whose recipient was unavailable",
        )
        self.signals_forwarded = Counter(
            "relay_signals_forwarded_total",
            "Total number of listening/telemetry signals forwarded",
        )
        self.unrecognized = Counter(
            "relay_unrecognized_messages_total",
            "Total number of messages answered with a diagnostic echo",
        )
        self.presence_broadcasts = Counter(
            "relay_presence_broadcasts_total", "Total number of presence broadcasts"
        )

        self.heartbeat_evictions = Counter(
            "relay_heartbeat_evictions_total",
            "Total number of roles evicted for heartbeat timeout",
        )
        self.stale_removals = Counter(
            "relay_stale_removals_total",
            "Total number of stale registrations removed by the cleanup sweep",
        )

    # === Connections ===

    def record_connection_open(self) -> None:
        with self._lock:
            self.connections_total.inc()
            self.connections_open.inc()

    def record_connection_closed(self, duration_seconds: float) -> None:
        with self._lock:
            self.connections_open.dec()
            self.connection_duration.observe(duration_seconds)

    def record_identification(self, takeover: bool = False) -> None:
        with self._lock:
            self.identifications.inc()
            if takeover:
                self.takeovers.inc()

    def set_sessions_active(self, count: int) -> None:
        with self._lock:
            self.sessions_active.set(float(count))

    # === Traffic ===

    def record_message_received(self) -> None:
        with self._lock:
            self.messages_received.inc()

    def record_audio_relayed(self) -> None:
        with self._lock:
            self.audio_relayed.inc()

    def record_audio_dropped(self) -> None:
        with self._lock:
            self.audio_dropped.inc()

    def record_delivery_failure(self) -> None:
        with self._lock:
            self.delivery_failures.inc()

    def record_signal_forwarded(self) -> None:
        with self._lock:
            self.signals_forwarded.inc()

    def record_unrecognized(self) -> None:
        with self._lock:
            self.unrecognized.inc()

    def record_presence_broadcast(self) -> None:
        with self._lock:
            self.presence_broadcasts.inc()

    # === Liveness ===

    def record_evictions(self, count: int) -> None:
        with self._lock:
            self.heartbeat_evictions.inc(count)

    def record_stale_removals(self, count: int) -> None:
        with self._lock:
            self.stale_removals.inc(count)

    # === Export ===

    def _all(self) -> list[Counter | Gauge | Histogram]:
        return [
            metric
            for metric in vars(self).values()
            if isinstance(metric, Counter | Gauge | Histogram)
        ]

    def export_prometheus(self) -> str:
        """Render every metric in Prometheus text exposition format."""
        with self._lock:
            lines: list[str] = []
            for metric in self._all():
                lines.extend(metric.render())
            return "\n".join(lines) + "\n"

    def get_summary(self) -> dict[str, float]:
        """Key metrics for dashboards and debugging."""
        with self._lock:
            return {
                "connections_total": self.connections_total.value,
                "connections_open": self.connections_open.value,
                "sessions_active": self.sessions_active.value,
                "identifications": self.identifications.value,
                "takeovers": self.takeovers.value,
                "messages_received": self.messages_received.value,
                "audio_relayed": self.audio_relayed.value,
                "audio_dropped": self.audio_dropped.value,
                "delivery_failures": self.delivery_failures.value,
                "signals_forwarded": self.signals_forwarded.value,
                "unrecognized_messages": self.unrecognized.value,
                "presence_broadcasts": self.presence_broadcasts.value,
                "heartbeat_evictions": self.heartbeat_evictions.value,
                "stale_removals": self.stale_removals.value,
            }
