"""Dead letter routing and DLQ depth telemetry."""

import asyncio
import enum
import logging
from typing import Dict, Optional

from nats.aio.msg import Msg

from athlete_ally_pipeline.event_bus import EventBus
from athlete_ally_pipeline.shared.config import RetryConfig
from athlete_ally_pipeline.shared.logging import log_with_context
from athlete_ally_pipeline.shared.metrics import PipelineMetrics
from athlete_ally_pipeline.shared.retry import exponential_backoff


logger = logging.getLogger(__name__)

MAX_ERROR_HEADER_LENGTH = 500


class DlqReason(str, enum.Enum):
    SCHEMA_INVALID = "schema_invalid"
    MAX_DELIVER = "max_deliver"
    NON_RETRYABLE = "non_retryable"


def dlq_subject(prefix: str, reason: DlqReason) -> str:
    return f"{prefix}.{reason.value}"


def _metadata(msg: Msg):
    try:
        return msg.metadata
    except Exception:
        return None


class DlqRouter:
    """Forwards a message, untouched, to ``<prefix>.<reason>`` with diagnostic headers."""

    def __init__(self, event_bus: EventBus, metrics: PipelineMetrics, retry: Optional[RetryConfig] = None):
        self.event_bus = event_bus
        self.metrics = metrics
        self.retry = retry or RetryConfig()

    def build_headers(
        self,
        msg: Msg,
        reason: DlqReason,
        domain: str,
        error: Optional[str] = None
    ) -> Dict[str, str]:
        headers = dict(msg.headers or {})

        original_id = headers.pop('Nats-Msg-Id', None)
        if original_id:
            headers['x-original-msg-id'] = original_id

        headers['x-dlq-reason'] = reason.value
        headers['x-dlq-domain'] = domain
        headers['x-original-subject'] = msg.subject

        metadata = _metadata(msg)
        if metadata is not None:
            headers['x-delivery-count'] = str(metadata.num_delivered)
            stream_seq = metadata.sequence.stream
            headers['x-original-stream-seq'] = str(stream_seq)
            # Repeated routing of the same delivery is collapsed by the DLQ stream
            headers['Nats-Msg-Id'] = f"dlq:{metadata.stream}:{stream_seq}"

        if error:
            headers['x-error'] = error[:MAX_ERROR_HEADER_LENGTH]

        return headers

    async def route(
        self,
        msg: Msg,
        prefix: str,
        reason: DlqReason,
        domain: str,
        error: Optional[str] = None,
        final: bool = False
    ) -> bool:
        """
        Publish the original payload to the DLQ subject.

        A ``final`` delivery will not be redelivered by the broker, so the
        publish is retried in process with backoff before giving up.

        Returns:
            True when the broker accepted the DLQ message
        """
        subject = dlq_subject(prefix, reason)
        headers = self.build_headers(msg, reason, domain, error)

        async def publish():
            return await self.event_bus.publish_raw(subject, msg.data, headers)

        try:
            if final:
                await exponential_backoff(
                    publish,
                    max_attempts=self.retry.max_attempts,
                    initial_delay=self.retry.initial_backoff_seconds,
                    max_delay=self.retry.max_backoff_seconds,
                    backoff_factor=self.retry.backoff_multiplier,
                    jitter=self.retry.jitter,
                    operation=f"DLQ publish to {subject}",
                )
            else:
                await publish()
        except Exception as e:
            self.metrics.dlq_publish_failures.labels(domain=domain).inc()
            if final:
                logger.critical(
                    f"Dropping {domain} message on its last delivery: DLQ publish to {subject} "
                    f"failed after {self.retry.max_attempts} attempts: {e}"
                )
            else:
                logger.error(f"Failed to publish {domain} message to {subject}: {e}")
            return False

        self.metrics.dlq_messages.labels(domain=domain, reason=reason.value).inc()
        log_with_context(
            logger, logging.WARNING, f"Routed {domain} message to {subject}: {error or reason.value}",
            domain=domain, reason=reason.value, original_subject=msg.subject,
            delivery_count=headers.get('x-delivery-count'),
        )
        return True


class DlqDepthMonitor:
    """Polls the DLQ stream and keeps the normalize_dlq_depth gauge current."""

    def __init__(
        self,
        event_bus: EventBus,
        metrics: PipelineMetrics,
        stream_name: str,
        interval_seconds: float = 30.0
    ):
        self.event_bus = event_bus
        self.metrics = metrics
        self.stream_name = stream_name
        self.interval_seconds = interval_seconds

        self._task: Optional[asyncio.Task] = None
        self.last_depth: Optional[int] = None

    async def refresh(self) -> Optional[int]:
        try:
            depth = await self.event_bus.stream_message_count(self.stream_name)
        except Exception as e:
            logger.warning(f"Could not read DLQ depth from {self.stream_name}: {e}")
            return None

        self.metrics.dlq_depth.set(depth)
        self.last_depth = depth
        return depth

    async def _run(self):
        while True:
            await self.refresh()
            await asyncio.sleep(self.interval_seconds)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="dlq-depth-monitor")
            logger.info(f"DLQ depth monitor started for {self.stream_name}")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
