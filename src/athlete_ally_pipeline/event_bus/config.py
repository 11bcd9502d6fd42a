"""Stream topology, subjects and client configuration for the event bus."""

import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from nats.js.api import DiscardPolicy, StorageType, StreamConfig
from pydantic import BaseModel, Field, field_validator


HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS
DUPLICATE_WINDOW_SECONDS = 2 * 60

STREAM_MODES = ('single', 'multi')

_DEFAULT_STREAM_NAMES = {
    'CORE': 'AA_CORE_HOT',
    'VENDOR': 'AA_VENDOR_HOT',
    'DLQ': 'AA_DLQ',
    'LEGACY': 'ATHLETE_ALLY_EVENTS',
}


def get_stream_names() -> Dict[str, str]:
    """Physical stream names, each overridable with STREAM_<TYPE>_NAME."""
    return {
        kind: os.getenv(f"STREAM_{kind}_NAME", default)
        for kind, default in _DEFAULT_STREAM_NAMES.items()
    }


STREAMS = get_stream_names()

# Schema topic -> NATS subject
EVENT_TOPICS: Dict[str, str] = {
    'hrv_raw_received': 'athlete-ally.hrv.raw-received',
    'hrv_normalized_stored': 'athlete-ally.hrv.normalized-stored',
    'sleep_raw_received': 'athlete-ally.sleep.raw-received',
    'sleep_normalized_stored': 'athlete-ally.sleep.normalized-stored',
    'vendor_webhook_received': 'vendor.oura.webhook.received',
}

SUBJECT_TOPICS: Dict[str, str] = {subject: topic for topic, subject in EVENT_TOPICS.items()}

_VENDOR_WEBHOOK_SUBJECT = re.compile(r'^vendor\.[a-z0-9_-]+\.webhook\.received$')


def vendor_webhook_subject(vendor: str) -> str:
    return f"vendor.{vendor}.webhook.received"


def topic_for_subject(subject: str) -> Optional[str]:
    """Resolve the schema topic that guards a subject, if any."""
    topic = SUBJECT_TOPICS.get(subject)
    if topic:
        return topic
    if _VENDOR_WEBHOOK_SUBJECT.match(subject):
        return 'vendor_webhook_received'
    return None


def get_stream_mode() -> str:
    mode = os.getenv('EVENT_STREAM_MODE', 'multi').strip().lower()
    if mode not in STREAM_MODES:
        raise ValueError(f"EVENT_STREAM_MODE must be one of {STREAM_MODES}, got '{mode}'")
    return mode


@dataclass
class StreamSettings:
    """Desired state of one JetStream stream."""
    name: str
    subjects: List[str]
    max_age_seconds: int
    replicas: int = 1
    storage: StorageType = StorageType.FILE
    discard: DiscardPolicy = DiscardPolicy.OLD
    duplicate_window_seconds: int = DUPLICATE_WINDOW_SECONDS

    def to_stream_config(self) -> StreamConfig:
        return StreamConfig(
            name=self.name,
            subjects=list(self.subjects),
            max_age=self.max_age_seconds,
            storage=self.storage,
            discard=self.discard,
            num_replicas=self.replicas,
            duplicate_window=self.duplicate_window_seconds,
        )


def get_stream_configs(mode: str, production: bool = False) -> List[StreamSettings]:
    """
    Stream layout for a topology mode.

    Args:
        mode: 'single' for one legacy stream, 'multi' for hot/vendor/DLQ streams
        production: Use three replicas instead of one

    Returns:
        Desired stream settings in creation order
    """
    replicas = 3 if production else 1
    names = get_stream_names()

    if mode == 'single':
        return [
            StreamSettings(
                name=names['LEGACY'],
                subjects=['athlete-ally.>', 'vendor.>', 'sleep.*'],
                max_age_seconds=DAY_SECONDS,
                replicas=replicas,
            )
        ]

    if mode == 'multi':
        return [
            StreamSettings(
                name=names['CORE'],
                subjects=['athlete-ally.>', 'sleep.*'],
                max_age_seconds=2 * DAY_SECONDS,
                replicas=replicas,
            ),
            StreamSettings(
                name=names['VENDOR'],
                subjects=['vendor.>'],
                max_age_seconds=2 * DAY_SECONDS,
                replicas=replicas,
            ),
            StreamSettings(
                name=names['DLQ'],
                subjects=['dlq.>'],
                max_age_seconds=14 * DAY_SECONDS,
                replicas=replicas,
            ),
        ]

    raise ValueError(f"Unknown stream mode: {mode}")


def get_stream_candidates(kind: str = 'core', mode: Optional[str] = None) -> List[str]:
    """
    Physical streams to try, in order, for a logical stream.

    In multi mode the legacy stream stays as a fallback so consumers keep
    working against a server that has not been migrated yet.
    """
    mode = mode or get_stream_mode()
    names = get_stream_names()

    if mode == 'single':
        return [names['LEGACY']]

    primary = {
        'core': names['CORE'],
        'vendor': names['VENDOR'],
        'dlq': names['DLQ'],
    }.get(kind)
    if primary is None:
        raise ValueError(f"Unknown logical stream: {kind}")

    if kind == 'dlq':
        return [primary]
    return [primary, names['LEGACY']]


def _enum_value(value):
    return getattr(value, 'value', value)


def stream_needs_update(existing: StreamConfig, desired: StreamSettings) -> bool:
    """Compare a server-side stream config with the desired settings."""
    if sorted(existing.subjects or []) != sorted(desired.subjects):
        return True
    if abs((existing.max_age or 0) - desired.max_age_seconds) > 1:
        return True
    if _enum_value(existing.storage) != _enum_value(desired.storage):
        return True
    if _enum_value(existing.discard) != _enum_value(desired.discard):
        return True
    if (existing.num_replicas or 1) != desired.replicas:
        return True
    if abs((existing.duplicate_window or 0) - desired.duplicate_window_seconds) > 1:
        return True
    return False


@dataclass
class ConsumerSettings:
    """Durable pull consumer settings for one normalization domain."""
    durable_name: str
    filter_subject: str
    dlq_subject: str
    max_deliver: int = 5
    ack_wait_ms: int = 30000
    nak_delay_ms: int = 5000
    max_ack_pending: int = 1000
    stream_kind: str = 'core'
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if self.max_deliver < 1:
            raise ValueError(f"max_deliver must be positive, got {self.max_deliver}")
        if self.ack_wait_ms <= 0:
            raise ValueError(f"ack_wait_ms must be positive, got {self.ack_wait_ms}")


class ValidationConfig(BaseModel):
    """Schema validation settings."""
    enabled: bool = Field(default=True, description="Validate events before publish")
    cache_size: int = Field(default=1000, ge=1, description="Compiled validator cache size")
    cache_ttl_ms: int = Field(default=300000, ge=0, description="Compiled validator TTL")


class EventBusConfig(BaseModel):
    """NATS connection and topology configuration."""
    nats_url: str = Field(default="nats://localhost:4222", description="NATS server URL")
    client_name: str = Field(default="athlete-ally", description="Connection name")
    stream_mode: str = Field(default="multi", description="Stream topology: single or multi")
    environment: str = Field(default="development", description="Deployment environment")
    manage_streams: bool = Field(default=True, description="Create/update streams on connect")
    manage_consumers: bool = Field(default=True, description="Create durable consumers on start")
    connect_timeout_seconds: float = Field(default=5.0, gt=0)
    max_reconnect_attempts: int = Field(default=-1)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)

    @field_validator('stream_mode')
    @classmethod
    def validate_stream_mode(cls, v):
        v = v.strip().lower()
        if v not in STREAM_MODES:
            raise ValueError(f"stream_mode must be one of {STREAM_MODES}")
        return v

    @property
    def production(self) -> bool:
        return self.environment.lower() == 'production'
