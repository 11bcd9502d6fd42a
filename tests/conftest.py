"""Pytest configuration and shared fixtures."""

import itertools
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, Mock

import pytest

from athlete_ally_pipeline.event_bus import EventBus, EventBusConfig, EventValidator
from athlete_ally_pipeline.services.normalize_service.src.repository import UpsertResult
from athlete_ally_pipeline.shared.metrics import PipelineMetrics


class FakeJetStream:
    """Records publishes and hands out increasing stream sequences."""

    def __init__(self):
        self.published: List[Tuple[str, bytes, Optional[Dict[str, str]]]] = []
        self.fail_subjects: Dict[str, Exception] = {}
        self._seq = itertools.count(1)

        self.stream_info = AsyncMock()
        self.add_stream = AsyncMock()
        self.update_stream = AsyncMock()
        self.consumer_info = AsyncMock()
        self.add_consumer = AsyncMock()
        self.pull_subscribe_bind = AsyncMock()

    async def publish(self, subject: str, data: bytes, headers: Optional[Dict[str, str]] = None):
        for prefix, error in self.fail_subjects.items():
            if subject.startswith(prefix):
                raise error
        self.published.append((subject, data, headers))
        return SimpleNamespace(stream='TEST', seq=next(self._seq), duplicate=False)

    def events(self, subject: str) -> List[Dict[str, Any]]:
        return [json.loads(data) for s, data, _ in self.published if s == subject]

    def subjects(self) -> List[str]:
        return [subject for subject, _, _ in self.published]


class FakeMsg:
    """Stand-in for a JetStream delivery."""

    def __init__(
        self,
        subject: str,
        data: Any,
        num_delivered: int = 1,
        stream_seq: int = 1,
        stream: str = 'AA_CORE_HOT',
        headers: Optional[Dict[str, str]] = None
    ):
        self.subject = subject
        self.data = data if isinstance(data, bytes) else json.dumps(data).encode('utf-8')
        self.headers = headers
        self.metadata = SimpleNamespace(
            num_delivered=num_delivered,
            stream=stream,
            sequence=SimpleNamespace(stream=stream_seq, consumer=stream_seq),
        )
        self.ack = AsyncMock()
        self.nak = AsyncMock()
        self.in_progress = AsyncMock()


class InMemoryRepository:
    """Upsert semantics of RecordRepository keyed by (userId, date)."""

    def __init__(self):
        self.rows: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.upserts = 0
        self._last_now: Optional[datetime] = None

    def _now(self) -> datetime:
        # Strictly increasing, like now() across separate transactions
        now = datetime.now(timezone.utc)
        if self._last_now is not None and now <= self._last_now:
            now = self._last_now + timedelta(microseconds=1)
        self._last_now = now
        return now

    async def upsert(self, table: str, record: Dict[str, Any]) -> UpsertResult:
        self.upserts += 1
        key = (table, record['userId'], str(record['date']))
        now = self._now()
        existing = self.rows.get(key)

        if existing is None:
            self.rows[key] = {**record, 'created_at': now, 'updated_at': now}
            return UpsertResult(inserted=True, created_at=now, updated_at=now)

        created_at = existing['created_at']
        self.rows[key] = {**record, 'created_at': created_at, 'updated_at': now}
        return UpsertResult(inserted=False, created_at=created_at, updated_at=now)


@pytest.fixture
def metrics() -> PipelineMetrics:
    return PipelineMetrics()


@pytest.fixture
def validator(metrics) -> EventValidator:
    return EventValidator(cache_size=16, cache_ttl_seconds=300, metrics=metrics)


@pytest.fixture
def event_bus_config() -> EventBusConfig:
    return EventBusConfig(nats_url="nats://test:4222", client_name="test", stream_mode="multi")


@pytest.fixture
def fake_js() -> FakeJetStream:
    return FakeJetStream()


@pytest.fixture
def mock_nc():
    nc = Mock()
    nc.is_connected = True
    nc.is_closed = False
    nc.drain = AsyncMock()
    nc.close = AsyncMock()
    return nc


@pytest.fixture
def connected_bus(event_bus_config, validator, metrics, fake_js, mock_nc) -> EventBus:
    """EventBus wired to a fake JetStream context instead of a server."""
    bus = EventBus(event_bus_config, validator, metrics)
    bus.nc = mock_nc
    bus.js = fake_js
    return bus


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def sample_hrv_event() -> Dict[str, Any]:
    return {
        'eventId': 'hrv-test-1',
        'payload': {
            'userId': 'athlete-1',
            'date': '2024-01-15',
            'rMSSD': 42.5,
            'capturedAt': '2024-01-15T07:30:00Z',
            'raw': {'source': 'oura'},
        },
    }


@pytest.fixture
def sample_sleep_event() -> Dict[str, Any]:
    return {
        'eventId': 'sleep-test-1',
        'payload': {
            'userId': 'athlete-1',
            'date': '2024-01-15',
            'durationMinutes': 452,
            'qualityScore': 81,
            'vendor': 'whoop',
            'capturedAt': '2024-01-15T07:30:00Z',
        },
    }


@pytest.fixture
def make_msg():
    return FakeMsg


@pytest.fixture
def metric_value(metrics):
    """Current value of a metric sample, 0.0 when it was never touched."""
    def _value(name: str, **labels) -> float:
        return metrics.registry.get_sample_value(name, labels) or 0.0
    return _value
