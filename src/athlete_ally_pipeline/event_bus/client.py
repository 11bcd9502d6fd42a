"""NATS JetStream client shared by the ingest and normalize services."""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import nats
import nats.errors
from nats.aio.client import Client as NATS
from nats.aio.msg import Msg
from nats.js.api import AckPolicy, ConsumerConfig, ConsumerInfo, DeliverPolicy, PubAck
from nats.js.errors import NotFoundError

from ..shared.metrics import PipelineMetrics
from .config import (
    ConsumerSettings,
    EventBusConfig,
    StreamSettings,
    get_stream_configs,
    stream_needs_update,
    topic_for_subject,
)
from .errors import EventBusNotConnectedError, SchemaValidationError, StreamNotFoundError
from .validator import EventValidator


logger = logging.getLogger(__name__)

MessageHandler = Callable[[Msg], Awaitable[None]]

IN_PROGRESS_EVERY = 3
LOOP_ERROR_BACKOFF_SECONDS = 1.0


@dataclass
class ConsumerState:
    """Read-only view of a durable consumer's server-side cursor."""
    stream: str
    durable: str
    delivered_stream_seq: int
    ack_floor_stream_seq: int
    num_pending: int
    num_ack_pending: int
    num_redelivered: int

    @classmethod
    def from_info(cls, info: ConsumerInfo) -> "ConsumerState":
        return cls(
            stream=info.stream_name,
            durable=info.name,
            delivered_stream_seq=(info.delivered.stream_seq or 0) if info.delivered else 0,
            ack_floor_stream_seq=(info.ack_floor.stream_seq or 0) if info.ack_floor else 0,
            num_pending=info.num_pending or 0,
            num_ack_pending=info.num_ack_pending or 0,
            num_redelivered=info.num_redelivered or 0,
        )


class DurableSubscription:
    """Pull loop over one bound durable consumer."""

    def __init__(
        self,
        subscription,
        stream_name: str,
        durable_name: str,
        handler: MessageHandler,
        batch_size: int = 10,
        expires_seconds: float = 5.0,
        idle_backoff_seconds: float = 0.25
    ):
        self._subscription = subscription
        self.stream_name = stream_name
        self.durable_name = durable_name
        self._handler = handler
        self.batch_size = batch_size
        self.expires_seconds = expires_seconds
        self.idle_backoff_seconds = idle_backoff_seconds

        self._running = False
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            "batches": 0,
            "messages": 0,
            "idle_polls": 0,
            "loop_errors": 0,
            "handler_errors": 0,
            "last_message_time": None
        }

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(
            self._run(), name=f"pull-{self.stream_name}-{self.durable_name}"
        )
        logger.info(
            f"Pull loop started for {self.stream_name}/{self.durable_name} "
            f"(batch={self.batch_size}, expires={self.expires_seconds}s)"
        )

    async def stop(self):
        """Stop the pull loop and unsubscribe."""
        if not self._running and self._task is None:
            return
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        try:
            await self._subscription.unsubscribe()
        except Exception as e:
            logger.warning(f"Error unsubscribing {self.durable_name}: {e}")

        logger.info(f"Pull loop stopped for {self.stream_name}/{self.durable_name}")

    async def _run(self):
        while self._running:
            try:
                messages = await self._subscription.fetch(
                    batch=self.batch_size, timeout=self.expires_seconds
                )
            except (nats.errors.TimeoutError, asyncio.TimeoutError):
                self.stats["idle_polls"] += 1
                await asyncio.sleep(self.idle_backoff_seconds)
                continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["loop_errors"] += 1
                logger.error(f"Pull loop error on {self.durable_name}: {e}", exc_info=True)
                await asyncio.sleep(LOOP_ERROR_BACKOFF_SECONDS)
                continue

            self.stats["batches"] += 1
            await self._dispatch(messages)

    async def _dispatch(self, messages: List[Msg]):
        for index, msg in enumerate(messages, start=1):
            if index % IN_PROGRESS_EVERY == 0:
                try:
                    await msg.in_progress()
                except Exception as e:
                    logger.debug(f"in_progress failed on {self.durable_name}: {e}")

            try:
                await self._handler(msg)
            except Exception as e:
                self.stats["handler_errors"] += 1
                logger.error(f"Unhandled error in {self.durable_name} handler: {e}", exc_info=True)

            self.stats["messages"] += 1
            self.stats["last_message_time"] = datetime.now(timezone.utc).isoformat()


class EventBus:
    """
    Owns one NATS connection and its JetStream context.

    Publishing validates the event against the contract for its topic and
    refuses to send anything that fails.
    """

    def __init__(
        self,
        config: EventBusConfig,
        validator: EventValidator,
        metrics: PipelineMetrics
    ):
        self.config = config
        self.validator = validator
        self.metrics = metrics

        self.nc: Optional[NATS] = None
        self.js = None
        self._subscriptions: List[DurableSubscription] = []

        self.stats = {
            "published": 0,
            "publish_errors": 0,
            "rejected": 0,
            "last_publish_time": None
        }

        logger.info(f"EventBus initialized for {config.nats_url} (mode={config.stream_mode})")

    @property
    def is_connected(self) -> bool:
        return self.nc is not None and self.nc.is_connected

    async def connect(self):
        """Connect to NATS and, when enabled, ensure the stream topology."""
        logger.info(f"Connecting to NATS at {self.config.nats_url}")

        self.nc = await nats.connect(
            servers=[self.config.nats_url],
            name=self.config.client_name,
            connect_timeout=self.config.connect_timeout_seconds,
            max_reconnect_attempts=self.config.max_reconnect_attempts,
        )
        self.js = self.nc.jetstream()

        if self.config.manage_streams:
            for stream in get_stream_configs(self.config.stream_mode, self.config.production):
                await self.ensure_stream(stream)

        logger.info("Connected to NATS JetStream")

    async def close(self):
        """Stop pull loops, then drain and close the connection."""
        for subscription in list(self._subscriptions):
            await subscription.stop()
        self._subscriptions.clear()

        if self.nc and not self.nc.is_closed:
            logger.info("Draining NATS connection")
            try:
                await self.nc.drain()
            except Exception as e:
                logger.warning(f"Error draining NATS connection: {e}")
                await self.nc.close()

        self.nc = None
        self.js = None

    def _require_connection(self, operation: str):
        if self.js is None or not self.is_connected:
            raise EventBusNotConnectedError(operation)

    async def ensure_stream(self, stream: StreamSettings) -> str:
        """
        Create a stream or bring it in line with the desired settings.

        Returns:
            'created', 'updated' or 'unchanged'
        """
        if self.js is None:
            raise EventBusNotConnectedError("ensure_stream")

        desired = stream.to_stream_config()

        try:
            info = await self.js.stream_info(stream.name)
        except NotFoundError:
            await self.js.add_stream(config=desired)
            logger.info(f"Created stream {stream.name} with subjects {stream.subjects}")
            return 'created'

        if stream_needs_update(info.config, stream):
            await self.js.update_stream(config=desired)
            logger.info(f"Updated stream {stream.name}")
            return 'updated'

        logger.debug(f"Stream {stream.name} is up to date")
        return 'unchanged'

    async def resolve_stream(self, candidates: List[str]) -> str:
        """Return the first candidate stream that exists on the server."""
        self._require_connection("resolve_stream")

        for name in candidates:
            try:
                await self.js.stream_info(name)
                return name
            except NotFoundError:
                logger.debug(f"Stream {name} not found, trying next candidate")

        raise StreamNotFoundError(candidates)

    async def publish(self, subject: str, event: Dict[str, Any], topic: Optional[str] = None) -> PubAck:
        """
        Validate and publish a JSON event.

        Raises:
            SchemaValidationError: The event fails its topic contract. Nothing is sent.
            EventBusNotConnectedError: No live connection.
        """
        topic = topic or topic_for_subject(subject)

        if topic:
            result = self.validator.validate(topic, event)
            if not result.valid:
                self.stats["rejected"] += 1
                self.metrics.events_rejected.labels(topic=topic, reason='schema_invalid').inc()
                logger.warning(f"Rejected event for {subject}: {result.message}")
                raise SchemaValidationError(topic, result.errors, result.message)

        self._require_connection("publish")

        headers = None
        event_id = event.get('eventId') if isinstance(event, dict) else None
        if event_id:
            # JetStream de-duplicates on this header within the stream's window
            headers = {'Nats-Msg-Id': f"{subject}:{event_id}"}

        data = json.dumps(event, default=str).encode('utf-8')
        label = topic or 'unknown'

        try:
            ack = await self.js.publish(subject, data, headers=headers)
        except Exception:
            self.stats["publish_errors"] += 1
            self.metrics.events_published.labels(topic=label, status='error').inc()
            raise

        self.stats["published"] += 1
        self.stats["last_publish_time"] = datetime.now(timezone.utc).isoformat()
        self.metrics.events_published.labels(topic=label, status='success').inc()
        logger.debug(f"Published {event_id or '<no id>'} to {subject} (seq={ack.seq})")
        return ack

    async def publish_raw(
        self,
        subject: str,
        data: bytes,
        headers: Optional[Dict[str, str]] = None
    ) -> PubAck:
        """Publish bytes without validation."""
        self._require_connection("publish_raw")
        return await self.js.publish(subject, data, headers=headers)

    async def ensure_consumer(self, stream: str, settings: ConsumerSettings) -> ConsumerInfo:
        """Bind to an existing durable consumer or create it."""
        self._require_connection("ensure_consumer")

        try:
            info = await self.js.consumer_info(stream, settings.durable_name)
            logger.info(f"Using existing consumer {settings.durable_name} on {stream}")
            return info
        except NotFoundError:
            pass

        config = ConsumerConfig(
            durable_name=settings.durable_name,
            filter_subject=settings.filter_subject,
            ack_policy=AckPolicy.EXPLICIT,
            deliver_policy=DeliverPolicy.ALL,
            max_deliver=settings.max_deliver,
            ack_wait=settings.ack_wait_ms / 1000,
            max_ack_pending=settings.max_ack_pending,
        )
        info = await self.js.add_consumer(stream, config=config)
        logger.info(
            f"Created consumer {settings.durable_name} on {stream} "
            f"(filter={settings.filter_subject}, max_deliver={settings.max_deliver}, "
            f"ack_wait={settings.ack_wait_ms}ms)"
        )
        return info

    async def subscribe_durable(
        self,
        stream_name: str,
        durable_name: str,
        handler: MessageHandler,
        batch_size: int = 10,
        expires_seconds: float = 5.0,
        idle_backoff_seconds: float = 0.25
    ) -> DurableSubscription:
        """Bind a pull subscription to a durable consumer and start its loop."""
        self._require_connection("subscribe_durable")

        pull = await self.js.pull_subscribe_bind(durable_name, stream_name)
        subscription = DurableSubscription(
            pull,
            stream_name,
            durable_name,
            handler,
            batch_size=batch_size,
            expires_seconds=expires_seconds,
            idle_backoff_seconds=idle_backoff_seconds,
        )
        subscription.start()
        self._subscriptions.append(subscription)
        return subscription

    async def consumer_state(self, stream: str, durable: str) -> ConsumerState:
        self._require_connection("consumer_state")
        info = await self.js.consumer_info(stream, durable)
        return ConsumerState.from_info(info)

    async def stream_message_count(self, stream: str) -> int:
        self._require_connection("stream_message_count")
        info = await self.js.stream_info(stream)
        return info.state.messages

    async def health_check(self) -> Dict[str, Any]:
        connected = self.is_connected
        return {
            "status": "healthy" if connected else "unhealthy",
            "connected": connected,
            "server": self.config.nats_url,
            "stream_mode": self.config.stream_mode,
            "subscriptions": len(self._subscriptions),
            "stats": dict(self.stats),
        }
