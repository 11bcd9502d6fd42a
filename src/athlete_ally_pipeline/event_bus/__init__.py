"""NATS JetStream event bus with contract validation."""

from .client import ConsumerState, DurableSubscription, EventBus
from .config import (
    EVENT_TOPICS,
    STREAMS,
    ConsumerSettings,
    EventBusConfig,
    StreamSettings,
    get_stream_candidates,
    get_stream_configs,
    get_stream_mode,
    topic_for_subject,
    vendor_webhook_subject,
)
from .errors import EventBusError, EventBusNotConnectedError, SchemaValidationError, StreamNotFoundError
from .validator import EventValidator, ValidationResult

__all__ = [
    'ConsumerSettings',
    'ConsumerState',
    'DurableSubscription',
    'EVENT_TOPICS',
    'EventBus',
    'EventBusConfig',
    'EventBusError',
    'EventBusNotConnectedError',
    'EventValidator',
    'STREAMS',
    'SchemaValidationError',
    'StreamNotFoundError',
    'StreamSettings',
    'ValidationResult',
    'get_stream_candidates',
    'get_stream_configs',
    'get_stream_mode',
    'topic_for_subject',
    'vendor_webhook_subject',
]
