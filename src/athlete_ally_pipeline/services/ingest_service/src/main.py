"""Ingest Service - HTTP ingest and vendor webhooks published to JetStream."""

import asyncio
import logging
import os
import signal
import sys
from typing import Optional

import asyncpg
from aiohttp import web

from athlete_ally_pipeline.event_bus import EventBus, EventValidator
from athlete_ally_pipeline.shared.logging import setup_logging
from athlete_ally_pipeline.shared.metrics import PipelineMetrics
from athlete_ally_pipeline.shared.retry import exponential_backoff

from .app import create_app
from .config.settings import IngestSettings, load_settings
from .crypto import TokenCipher
from .oura_oauth import OuraOAuthClient, OuraOAuthHandler
from .token_store import TokenStore, create_token_store


logger = logging.getLogger(__name__)


class IngestService:
    """Owns the NATS connection, optional token store and the HTTP server."""

    def __init__(self, settings: IngestSettings):
        self.settings = settings
        self.metrics = PipelineMetrics()

        validation = settings.event_bus.validation
        self.validator = EventValidator(
            enabled=validation.enabled,
            cache_size=validation.cache_size,
            cache_ttl_seconds=validation.cache_ttl_ms / 1000,
            metrics=self.metrics,
        )
        self.event_bus = EventBus(settings.event_bus, self.validator, self.metrics)

        self.pool: Optional[asyncpg.Pool] = None
        self.token_store: Optional[TokenStore] = None
        self.oauth_client: Optional[OuraOAuthClient] = None

        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._shutdown_event = asyncio.Event()

        logger.info("Ingest Service initialized")

    async def _retry(self, func, operation: str):
        retry = self.settings.retry
        return await exponential_backoff(
            func,
            max_attempts=retry.max_attempts,
            initial_delay=retry.initial_backoff_seconds,
            max_delay=retry.max_backoff_seconds,
            backoff_factor=retry.backoff_multiplier,
            jitter=retry.jitter,
            operation=operation,
        )

    async def _build_oauth_handler(self) -> Optional[OuraOAuthHandler]:
        if not self.settings.oura.oauth_enabled:
            logger.info("Oura OAuth flow disabled")
            return None

        cipher = TokenCipher.from_base64(self.settings.token_store.encryption_key)

        if self.settings.token_store.backend == 'postgres':
            dsn = self.settings.token_store.database_url
            if not dsn:
                raise ValueError("DATABASE_URL is required for the postgres token store")
            self.pool = await self._retry(
                lambda: asyncpg.create_pool(dsn=dsn, min_size=1, max_size=5, command_timeout=30),
                "Postgres connect",
            )

        self.token_store = create_token_store(self.settings.token_store, self.pool)
        await self.token_store.initialize()

        self.oauth_client = OuraOAuthClient(self.settings.oura)
        return OuraOAuthHandler(self.oauth_client, self.token_store, cipher)

    async def start(self):
        """Connect dependencies and start serving HTTP."""
        logger.info("Starting Ingest Service")

        await self._retry(self.event_bus.connect, "NATS connect")
        oauth_handler = await self._build_oauth_handler()

        app = create_app(self.settings, self.event_bus, self.metrics, oauth_handler=oauth_handler)
        self.runner = web.AppRunner(app)
        await self.runner.setup()

        host, port = self.settings.health.host, self.settings.health.port
        self.site = web.TCPSite(self.runner, host, port)
        await self.site.start()

        logger.info(f"Ingest Service listening on http://{host}:{port}")

    async def stop(self):
        logger.info("Shutting down Ingest Service")

        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        if self.oauth_client:
            await self.oauth_client.close()

        await self.event_bus.close()

        if self.pool:
            await self.pool.close()
            self.pool = None

        logger.info("Ingest Service stopped")

    async def run(self):
        """Start, wait for a shutdown signal, then stop."""
        self._setup_signal_handlers()
        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def request_shutdown(self):
        self._shutdown_event.set()

    def _setup_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                logger.debug(f"Signal handlers not supported for {sig}")


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE")

    try:
        settings = load_settings(config_file)
    except Exception as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    setup_logging(settings.logging, settings.service_name)
    service = IngestService(settings)

    try:
        await service.run()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
