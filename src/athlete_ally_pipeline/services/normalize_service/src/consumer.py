"""Durable JetStream consumer that drives one normalization domain."""

import enum
import json
import logging
import time
from typing import Any, Dict, Optional

from nats.aio.msg import Msg
from nats.js.errors import NotFoundError

from athlete_ally_pipeline.event_bus import (
    ConsumerSettings,
    DurableSubscription,
    EventBus,
    EventValidator,
    StreamNotFoundError,
    get_stream_candidates,
)
from athlete_ally_pipeline.shared.metrics import PipelineMetrics
from athlete_ally_pipeline.shared.telemetry import NullTracer, Span, Tracer

from .config.settings import PullConfig
from .dlq import DlqReason, DlqRouter
from .errors import ErrorClass, classify_error
from .processors import Processor


logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    ACKED = "acked"
    SCHEMA_INVALID = "schema_invalid"
    RETRY = "retry"
    MAX_DELIVER = "max_deliver"
    NON_RETRYABLE = "non_retryable"
    DLQ_FAILED = "dlq_failed"


_DLQ_OUTCOMES = {
    DlqReason.SCHEMA_INVALID: Outcome.SCHEMA_INVALID,
    DlqReason.MAX_DELIVER: Outcome.MAX_DELIVER,
    DlqReason.NON_RETRYABLE: Outcome.NON_RETRYABLE,
}


def delivery_attempt(msg: Msg) -> int:
    """1-based delivery count from JetStream metadata."""
    try:
        return int(msg.metadata.num_delivered)
    except Exception:
        return 1


def stream_sequence(msg: Msg) -> Optional[int]:
    try:
        return int(msg.metadata.sequence.stream)
    except Exception:
        return None


class NormalizationConsumer:
    """
    Runs the per-message state machine for one domain.

    Every message ends in exactly one terminal action: ack after a
    successful upsert and publish, ack after DLQ routing, or nak with a
    delay for transient failures. A failed DLQ publish is nak'd too so the
    routing is retried on redelivery. On the last allowed delivery there is
    no redelivery, so the router retries the publish in process instead.
    """

    def __init__(
        self,
        settings: ConsumerSettings,
        processor: Processor,
        event_bus: EventBus,
        validator: EventValidator,
        metrics: PipelineMetrics,
        dlq: Optional[DlqRouter] = None,
        tracer: Optional[Tracer] = None
    ):
        self.settings = settings
        self.processor = processor
        self.domain = processor.domain
        self.event_bus = event_bus
        self.validator = validator
        self.metrics = metrics
        self.dlq = dlq or DlqRouter(event_bus, metrics)
        self.tracer = tracer or NullTracer()

        self.stream_name: Optional[str] = None
        self.subscription: Optional[DurableSubscription] = None

        self.stats: Dict[str, Any] = {outcome.value: 0 for outcome in Outcome}
        self.stats["last_message_time"] = None

    async def handle(self, msg: Msg) -> Outcome:
        """Process one delivery and settle it."""
        started = time.perf_counter()
        attempt = delivery_attempt(msg)

        attributes = {
            'messaging.system': 'nats',
            'messaging.destination': msg.subject,
            'messaging.redelivery_count': max(0, attempt - 1),
        }
        stream_seq = stream_sequence(msg)
        if stream_seq is not None:
            attributes['messaging.nats.stream_sequence'] = stream_seq

        with self.tracer.start_span(f"normalize.{self.domain}.consume", attributes) as span:
            outcome = await self._process(msg, attempt, span)
            span.set_attribute('normalize.outcome', outcome.value)
            span.set_status(outcome is Outcome.ACKED, None if outcome is Outcome.ACKED else outcome.value)

        self.metrics.messages.labels(domain=self.domain, result=outcome.value).inc()
        self.metrics.processing_duration.labels(domain=self.domain, result=outcome.value).observe(
            time.perf_counter() - started
        )
        self.stats[outcome.value] += 1
        self.stats["last_message_time"] = time.time()
        return outcome

    async def _process(self, msg: Msg, attempt: int, span: Span) -> Outcome:
        try:
            event = json.loads(msg.data)
        except ValueError as e:
            logger.warning(f"{self.domain} message is not valid JSON: {e}")
            return await self._dead_letter(msg, attempt, DlqReason.SCHEMA_INVALID, f"Malformed JSON: {e}")

        validation = self.validator.validate(self.processor.raw_topic, event)
        if not validation.valid:
            logger.warning(f"{self.domain} validation failed: {validation.message}")
            return await self._dead_letter(msg, attempt, DlqReason.SCHEMA_INVALID, validation.message)

        try:
            await self.processor.process(event)
        except Exception as e:
            span.record_exception(e)
            return await self._on_failure(msg, attempt, e)

        await self._settle(msg, 'ack')
        return Outcome.ACKED

    async def _on_failure(self, msg: Msg, attempt: int, error: Exception) -> Outcome:
        if attempt >= self.settings.max_deliver:
            logger.error(
                f"{self.domain} message reached max_deliver "
                f"({attempt}/{self.settings.max_deliver}): {error}"
            )
            return await self._dead_letter(msg, attempt, DlqReason.MAX_DELIVER, str(error))

        if classify_error(error) is ErrorClass.TRANSIENT:
            logger.warning(
                f"Transient {self.domain} error on attempt {attempt}/{self.settings.max_deliver}, "
                f"retrying in {self.settings.nak_delay_ms}ms: {error}"
            )
            await self._settle(msg, 'nak')
            return Outcome.RETRY

        logger.error(f"Non-retryable {self.domain} error: {error}", exc_info=error)
        return await self._dead_letter(msg, attempt, DlqReason.NON_RETRYABLE, str(error))

    async def _dead_letter(self, msg: Msg, attempt: int, reason: DlqReason, error: Optional[str]) -> Outcome:
        # The broker will not redeliver past max_deliver, so a nak cannot retry the routing
        final = attempt >= self.settings.max_deliver
        routed = await self.dlq.route(msg, self.settings.dlq_subject, reason, self.domain, error, final=final)
        if not routed:
            await self._settle(msg, 'nak')
            return Outcome.DLQ_FAILED

        await self._settle(msg, 'ack')
        return _DLQ_OUTCOMES[reason]

    async def _settle(self, msg: Msg, action: str):
        # A lost ack or nak only causes a redelivery, which the upsert absorbs
        try:
            if action == 'ack':
                await msg.ack()
            else:
                await msg.nak(delay=self.settings.nak_delay_ms / 1000)
        except Exception as e:
            logger.warning(f"Failed to {action} {self.domain} message: {e}")

    async def _bind_stream(self, manage_consumers: bool, stream_mode: str) -> str:
        candidates = get_stream_candidates(self.settings.stream_kind, stream_mode)

        if manage_consumers:
            stream = await self.event_bus.resolve_stream(candidates)
            await self.event_bus.ensure_consumer(stream, self.settings)
            return stream

        for stream in candidates:
            try:
                await self.event_bus.consumer_state(stream, self.settings.durable_name)
                logger.info(f"Found existing consumer {self.settings.durable_name} on {stream}")
                return stream
            except NotFoundError:
                logger.info(f"Consumer {self.settings.durable_name} not on {stream}, trying next candidate")

        raise StreamNotFoundError(candidates)

    async def start(self, pull: PullConfig, manage_consumers: bool = True, stream_mode: str = 'multi'):
        """Bind to the durable consumer and start pulling."""
        self.stream_name = await self._bind_stream(manage_consumers, stream_mode)
        self.subscription = await self.event_bus.subscribe_durable(
            self.stream_name,
            self.settings.durable_name,
            self.handle,
            batch_size=pull.batch_size,
            expires_seconds=pull.expires_ms / 1000,
            idle_backoff_seconds=pull.idle_backoff_ms / 1000,
        )
        logger.info(
            f"{self.domain} consumer bound: stream={self.stream_name}, "
            f"durable={self.settings.durable_name}, subject={self.settings.filter_subject}, "
            f"max_deliver={self.settings.max_deliver}, ack_wait={self.settings.ack_wait_ms}ms"
        )

    async def stop(self):
        if self.subscription:
            await self.subscription.stop()
            self.subscription = None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "stream": self.stream_name,
            "durable": self.settings.durable_name,
            "running": bool(self.subscription and self.subscription.running),
            **self.stats,
        }
