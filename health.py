"""
Health check endpoints for Kubernetes liveness and readiness probes.

- /health: canary monitor status snapshot, always 200 while the process serves
- /ready: 200 once startup wiring has finished, 503 before that and on shutdown
- /live: 503 when the canary monitor loop has stopped completing ticks, so the
  kubelet restarts the pod
"""

import logging
from typing import Optional

from aiohttp import web

logger = logging.getLogger(__name__)


class HealthCheckServer:
    """
    HTTP server reporting operator and canary monitor health.

    Args:
        host: Interface to bind
        port: Port to listen on
        monitor: CanaryMonitor whose progress backs /health and /live; when
            unset the operator is considered alive with nothing to report
    """

    def __init__(self, host: str = "0.0.0.0", port: int = 8080, monitor=None):
        self.host = host
        self.port = port
        self.monitor = monitor
        self.runner: Optional[web.AppRunner] = None
        self._is_ready = False

        self.app = web.Application()
        self.app.add_routes(
            [
                web.get("/health", self.health_handler),
                web.get("/ready", self.readiness_handler),
                web.get("/live", self.liveness_handler),
            ]
        )

    @property
    def is_ready(self) -> bool:
        return self._is_ready

    def _monitor_stalled(self) -> bool:
        return self.monitor is not None and self.monitor.is_stalled()

    async def health_handler(self, request: web.Request) -> web.Response:
        payload = {"status": "healthy", "ready": self._is_ready}
        if self.monitor is not None:
            payload["monitor"] = self.monitor.status()
        return web.json_response(payload)

    async def readiness_handler(self, request: web.Request) -> web.Response:
        if not self._is_ready:
            return web.json_response(
                {"status": "not ready", "reason": "operator initializing"}, status=503
            )
        return web.json_response({"status": "ready"})

    async def liveness_handler(self, request: web.Request) -> web.Response:
        if self._monitor_stalled():
            logger.warning("Liveness check failed: canary monitor is stalled")
            return web.json_response(
                {"status": "stalled", "reason": "canary monitor has not completed a tick"},
                status=503,
            )
        return web.json_response({"status": "alive"})

    def mark_ready(self):
        self._is_ready = True
        logger.info("Operator marked as ready")

    def mark_not_ready(self):
        self._is_ready = False
        logger.info("Operator marked as not ready")

    async def start(self):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        await web.TCPSite(self.runner, self.host, self.port).start()
        logger.info(f"Health check server listening on {self.host}:{self.port}")

    async def stop(self):
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            logger.info("Health check server stopped")


async def run_health_server(host: str = "0.0.0.0", port: int = 8080, monitor=None) -> HealthCheckServer:
    """Create and start a health check server."""
    server = HealthCheckServer(host, port, monitor)
    await server.start()
    return server
