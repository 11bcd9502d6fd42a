"""Prometheus metrics for the ingest and normalize services."""

import logging
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class PipelineMetrics:
    """
    Metric families shared by the pipeline components.

    Each instance owns its own CollectorRegistry so that several services
    (or tests) can live in one process without duplicate registration.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        # Event bus
        self.events_published = Counter(
            'event_bus_events_published_total',
            'Total number of events published',
            ['topic', 'status'],
            registry=self.registry
        )

        self.events_rejected = Counter(
            'event_bus_events_rejected_total',
            'Total number of events rejected before publish',
            ['topic', 'reason'],
            registry=self.registry
        )

        self.schema_cache_hits = Counter(
            'event_bus_schema_cache_hits_total',
            'Schema validator cache hits',
            registry=self.registry
        )

        self.schema_cache_misses = Counter(
            'event_bus_schema_cache_misses_total',
            'Schema validator cache misses',
            registry=self.registry
        )

        # Normalize consumers
        self.messages = Counter(
            'normalize_messages_total',
            'Messages processed by normalize consumers',
            ['domain', 'result'],
            registry=self.registry
        )

        self.dlq_messages = Counter(
            'normalize_dlq_messages_total',
            'Messages routed to a dead letter subject',
            ['domain', 'reason'],
            registry=self.registry
        )

        self.dlq_publish_failures = Counter(
            'normalize_dlq_publish_failures_total',
            'Failed attempts to publish to a dead letter subject',
            ['domain'],
            registry=self.registry
        )

        self.dlq_depth = Gauge(
            'normalize_dlq_depth',
            'Messages currently stored in the DLQ stream',
            registry=self.registry
        )

        self.processing_duration = Histogram(
            'normalize_processing_duration_seconds',
            'Time spent handling one message',
            ['domain', 'result'],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10],
            registry=self.registry
        )

        # Ingest
        self.ingest_requests = Counter(
            'ingest_requests_total',
            'Ingest HTTP requests by route and outcome',
            ['route', 'status'],
            registry=self.registry
        )

        self.signature_failures = Counter(
            'ingest_webhook_signature_failures_total',
            'Webhook requests rejected for a bad signature',
            ['vendor'],
            registry=self.registry
        )

    def render(self) -> bytes:
        """Render all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
