"""HTTP side channel for probes, dashboards and scrapers.

Routes (all GET, all read-only):

    /health           transport up? plus the registry snapshot (200 or 503)
    /liveness         process alive (always 200)
    /status           presence of both roles, same shape peers receive
    /metrics          Prometheus text exposition
    /metrics/summary  headline counters as JSON
"""

import logging
import time

from aiohttp import web

from src.relay.metrics import RelayMetrics
from src.relay.registry import SessionRegistry
from src.relay.transport.base import Transport

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Request handlers bound to the relay's registry and metrics."""

    def __init__(
        self,
        registry: SessionRegistry,
        metrics: RelayMetrics,
        transport: Transport | None = None,
    ) -> None:
        """
        Args:
            registry: Read for snapshots only, never mutated here
            metrics: Collector to export
            transport: When given, /health fails while it is not running
        """
        self.registry = registry
        self.metrics = metrics
        self.transport = transport
        self._started = time.time()

    def _uptime(self) -> float:
        return round(time.time() - self._started, 3)

    async def health_check(self, request: web.Request) -> web.Response:
        accepting = self.transport is None or self.transport.is_running
        logger.debug("Health probe", extra={"accepting": accepting})

        return web.json_response(
            {
                "status": "healthy" if accepting else "unhealthy",
                "uptime_seconds": self._uptime(),
                "transport": accepting,
                "registry": self.registry.snapshot(),
            },
            status=200 if accepting else 503,
        )

    async def liveness_check(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "alive", "uptime_seconds": self._uptime()})

    async def status(self, request: web.Request) -> web.Response:
        return web.json_response(
            {"users": self.registry.status_by_name(), **self.registry.snapshot()}
        )

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        try:
            body = self.metrics.export_prometheus()
        except Exception as e:
            logger.error("Prometheus export failed", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# export failed: {e}\n", content_type="text/plain", status=500
            )
        return web.Response(text=body, content_type="text/plain")

    async def metrics_summary(self, request: web.Request) -> web.Response:
        try:
            summary = self.metrics.get_summary()
        except Exception as e:
            logger.error("Metrics summary failed", extra={"error": str(e)}, exc_info=True)
            return web.json_response({"status": "error", "error": str(e)}, status=500)
        return web.json_response(
            {"status": "ok", "uptime_seconds": self._uptime(), "metrics": summary}
        )


def setup_health_routes(
    app: web.Application,
    registry: SessionRegistry,
    metrics: RelayMetrics,
    transport: Transport | None = None,
) -> None:
    """Mount the health routes on an aiohttp application."""
    handler = HealthCheckHandler(registry, metrics, transport)

    routes = {
        "/health": handler.health_check,
        "/liveness": handler.liveness_check,
        "/status": handler.status,
        "/metrics": handler.metrics_endpoint,
        "/metrics/summary": handler.metrics_summary,
    }
    for path, route_handler in routes.items():
        app.router.add_get(path, route_handler)

    logger.info("Health routes mounted", extra={"paths": list(routes)})
