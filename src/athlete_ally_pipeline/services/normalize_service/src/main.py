"""Normalize Service - durable JetStream consumers writing canonical HRV and sleep records."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from asyncpg import Pool

from athlete_ally_pipeline.event_bus import STREAMS, EventBus, EventValidator
from athlete_ally_pipeline.shared.logging import setup_logging
from athlete_ally_pipeline.shared.metrics import PipelineMetrics
from athlete_ally_pipeline.shared.retry import exponential_backoff
from athlete_ally_pipeline.shared.telemetry import create_tracer

from .config.settings import NormalizeSettings, load_settings
from .consumer import NormalizationConsumer
from .dlq import DlqDepthMonitor, DlqRouter
from .health import HealthCheckHandler, HealthCheckServer
from .processors import HrvProcessor, Processor, SleepProcessor, VendorWebhookProcessor
from .repository import RecordRepository, create_pool


logger = logging.getLogger(__name__)


class NormalizeService:
    """Owns the database pool, the NATS connection and one consumer per domain."""

    def __init__(self, settings: NormalizeSettings):
        self.settings = settings
        self.metrics = PipelineMetrics()
        self.tracer = create_tracer(settings.telemetry)

        validation = settings.event_bus.validation
        self.validator = EventValidator(
            enabled=validation.enabled,
            cache_size=validation.cache_size,
            cache_ttl_seconds=validation.cache_ttl_ms / 1000,
            metrics=self.metrics,
        )
        self.event_bus = EventBus(settings.event_bus, self.validator, self.metrics)
        self.dlq_router = DlqRouter(self.event_bus, self.metrics, settings.retry)

        self.pool: Optional[Pool] = None
        self.repository: Optional[RecordRepository] = None
        self.consumers: List[NormalizationConsumer] = []
        self.dlq_monitor: Optional[DlqDepthMonitor] = None

        self.health_server = HealthCheckServer(
            HealthCheckHandler(settings.service_name, self.health_check, self.metrics),
            host=settings.health.host,
            port=settings.health.port,
        )
        self._shutdown_event = asyncio.Event()

        logger.info("Normalize Service initialized")

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

    def _processor_for(self, domain: str) -> Processor:
        if domain == 'hrv':
            return HrvProcessor(self.repository, self.event_bus)
        if domain == 'sleep':
            return SleepProcessor(self.repository, self.event_bus)
        return VendorWebhookProcessor(domain)

    async def _start_consumers(self):
        manage_consumers = self.settings.event_bus.manage_consumers
        stream_mode = self.settings.event_bus.stream_mode

        for domain, domain_config in self.settings.domains().items():
            if not domain_config.enabled:
                logger.info(f"{domain} consumer disabled")
                continue

            consumer = NormalizationConsumer(
                domain_config.to_consumer_settings(),
                self._processor_for(domain),
                self.event_bus,
                self.validator,
                self.metrics,
                dlq=self.dlq_router,
                tracer=self.tracer,
            )
            await consumer.start(self.settings.pull, manage_consumers, stream_mode)
            self.consumers.append(consumer)

    async def start(self):
        """Connect dependencies, bind consumers and start the health server."""
        logger.info("Starting Normalize Service")

        self.pool = await self._retry(lambda: create_pool(self.settings.database), "Postgres connect")
        self.repository = RecordRepository(self.pool)
        if self.settings.database.create_tables:
            await self.repository.create_tables()

        await self._retry(self.event_bus.connect, "NATS connect")
        await self._start_consumers()

        # Only multi mode has a stream capturing dlq.> subjects
        if self.settings.dlq_monitor.enabled and self.settings.event_bus.stream_mode == 'multi':
            self.dlq_monitor = DlqDepthMonitor(
                self.event_bus,
                self.metrics,
                STREAMS['DLQ'],
                interval_seconds=self.settings.dlq_monitor.interval_seconds,
            )
            self.dlq_monitor.start()

        await self.health_server.start()
        logger.info(f"Normalize Service running with {len(self.consumers)} consumer(s)")

    async def stop(self):
        logger.info("Shutting down Normalize Service")

        await self.health_server.stop()

        if self.dlq_monitor:
            await self.dlq_monitor.stop()

        for consumer in self.consumers:
            await consumer.stop()
        self.consumers.clear()

        await self.event_bus.close()

        if self.pool:
            await self.pool.close()
            self.pool = None

        logger.info("Normalize Service stopped")

    async def run(self):
        """Start, wait for a shutdown signal, then stop."""
        self._setup_signal_handlers()
        try:
            await self.start()
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

    async def health_check(self) -> Dict[str, Any]:
        bus_health = await self.event_bus.health_check()
        nats_ok = bus_health['status'] == 'healthy'

        db_ok = False
        if self.repository:
            db_health = await self.repository.health_check()
            db_ok = db_health['status'] == 'healthy'

        return {
            'status': 'healthy' if nats_ok and db_ok else 'unhealthy',
            'service': self.settings.service_name,
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'services': {
                'database': 'connected' if db_ok else 'disconnected',
                'nats': 'connected' if nats_ok else 'disconnected',
            },
            'consumers': [consumer.get_stats() for consumer in self.consumers],
            'dlq_depth': self.dlq_monitor.last_depth if self.dlq_monitor else None,
        }


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
    service = NormalizeService(settings)

    try:
        await service.run()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
