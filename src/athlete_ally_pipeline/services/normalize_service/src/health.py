"""Health and metrics endpoints for the normalize service."""

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web, web_request
from aiohttp.web_response import Response

from athlete_ally_pipeline.shared.metrics import PipelineMetrics


logger = logging.getLogger(__name__)

HealthProvider = Callable[[], Awaitable[Dict[str, Any]]]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class HealthCheckHandler:
    """Health check HTTP handler."""

    def __init__(self, service_name: str, health_provider: HealthProvider, metrics: PipelineMetrics):
        self.service_name = service_name
        self.health_provider = health_provider
        self.metrics = metrics

    async def health(self, request: web_request.Request) -> Response:
        try:
            health_data = await self.health_provider()
            status = 200 if health_data["status"] == "healthy" else 503
            return web.json_response(health_data, status=status)

        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "service": self.service_name,
                    "status": "unhealthy",
                    "error": str(e),
                    "timestamp": _utc_now()
                },
                status=503
            )

    async def live(self, request: web_request.Request) -> Response:
        """Liveness probe: the event loop is answering."""
        return web.json_response({"alive": True, "timestamp": _utc_now()})

    async def metrics_endpoint(self, request: web_request.Request) -> Response:
        return web.Response(body=self.metrics.render(), headers={'Content-Type': self.metrics.content_type})


def create_health_app(handler: HealthCheckHandler) -> web.Application:
    app = web.Application()
    app.router.add_get('/health', handler.health)
    app.router.add_get('/live', handler.live)
    app.router.add_get('/metrics', handler.metrics_endpoint)
    return app


class HealthCheckServer:
    """HTTP server for health check endpoints."""

    def __init__(self, handler: HealthCheckHandler, host: str = "0.0.0.0", port: int = 4102):
        self.handler = handler
        self.host = host
        self.port = port
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        logger.info(f"Starting health check server on {self.host}:{self.port}")

        self.runner = web.AppRunner(create_health_app(self.handler))
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Health check server started on http://{self.host}:{self.port}")

    async def stop(self):
        if self.site:
            await self.site.stop()
            self.site = None

        if self.runner:
            await self.runner.cleanup()
            self.runner = None

        logger.info("Health check server stopped")
