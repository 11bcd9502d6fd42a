"""Tests for stream topology, contract validation and the EventBus client."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import nats.errors
import pytest
from nats.js.api import StorageType
from nats.js.errors import NotFoundError

from athlete_ally_pipeline.event_bus import (
    EVENT_TOPICS,
    ConsumerSettings,
    EventBus,
    EventBusNotConnectedError,
    EventValidator,
    SchemaValidationError,
    StreamNotFoundError,
    get_stream_candidates,
    get_stream_configs,
    get_stream_mode,
    topic_for_subject,
    vendor_webhook_subject,
)
from athlete_ally_pipeline.event_bus.client import DurableSubscription
from athlete_ally_pipeline.event_bus.config import DAY_SECONDS, stream_needs_update


class TestStreamTopology:

    def test_multi_mode_streams(self):
        streams = {stream.name: stream for stream in get_stream_configs('multi')}

        assert set(streams) == {'AA_CORE_HOT', 'AA_VENDOR_HOT', 'AA_DLQ'}
        assert streams['AA_CORE_HOT'].subjects == ['athlete-ally.>', 'sleep.*']
        assert streams['AA_VENDOR_HOT'].subjects == ['vendor.>']
        assert streams['AA_DLQ'].subjects == ['dlq.>']
        assert streams['AA_CORE_HOT'].max_age_seconds == 2 * DAY_SECONDS
        assert streams['AA_DLQ'].max_age_seconds == 14 * DAY_SECONDS
        assert all(stream.replicas == 1 for stream in streams.values())
        assert all(stream.duplicate_window_seconds == 120 for stream in streams.values())

    def test_single_mode_stream(self):
        streams = get_stream_configs('single')

        assert len(streams) == 1
        assert streams[0].name == 'ATHLETE_ALLY_EVENTS'
        assert streams[0].subjects == ['athlete-ally.>', 'vendor.>', 'sleep.*']
        assert streams[0].max_age_seconds == DAY_SECONDS

    def test_production_uses_three_replicas(self):
        assert all(stream.replicas == 3 for stream in get_stream_configs('multi', production=True))

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            get_stream_configs('triple')

    def test_stream_names_from_env(self, monkeypatch):
        monkeypatch.setenv('STREAM_CORE_NAME', 'CUSTOM_CORE')
        assert get_stream_configs('multi')[0].name == 'CUSTOM_CORE'
        assert get_stream_candidates('core', 'multi') == ['CUSTOM_CORE', 'ATHLETE_ALLY_EVENTS']

    def test_stream_config_conversion(self):
        config = get_stream_configs('multi')[2].to_stream_config()

        assert config.name == 'AA_DLQ'
        assert config.subjects == ['dlq.>']
        assert config.storage == StorageType.FILE
        assert config.duplicate_window == 120


class TestStreamCandidates:

    def test_multi_mode_falls_back_to_legacy(self):
        assert get_stream_candidates('core', 'multi') == ['AA_CORE_HOT', 'ATHLETE_ALLY_EVENTS']
        assert get_stream_candidates('vendor', 'multi') == ['AA_VENDOR_HOT', 'ATHLETE_ALLY_EVENTS']

    def test_dlq_has_no_fallback(self):
        assert get_stream_candidates('dlq', 'multi') == ['AA_DLQ']

    def test_single_mode(self):
        assert get_stream_candidates('vendor', 'single') == ['ATHLETE_ALLY_EVENTS']

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            get_stream_candidates('archive', 'multi')

    def test_mode_from_env(self, monkeypatch):
        monkeypatch.setenv('EVENT_STREAM_MODE', 'single')
        assert get_stream_mode() == 'single'
        assert get_stream_candidates('core') == ['ATHLETE_ALLY_EVENTS']

        monkeypatch.setenv('EVENT_STREAM_MODE', 'sharded')
        with pytest.raises(ValueError):
            get_stream_mode()


class TestStreamNeedsUpdate:

    def test_identical_config(self):
        desired = get_stream_configs('multi')[0]
        assert stream_needs_update(desired.to_stream_config(), desired) is False

    def test_subject_order_is_ignored(self):
        desired = get_stream_configs('multi')[0]
        existing = desired.to_stream_config()
        existing.subjects = list(reversed(existing.subjects))
        assert stream_needs_update(existing, desired) is False

    def test_changed_subjects_and_age(self):
        desired = get_stream_configs('multi')[0]

        existing = desired.to_stream_config()
        existing.subjects = ['athlete-ally.>']
        assert stream_needs_update(existing, desired) is True

        existing = desired.to_stream_config()
        existing.max_age = DAY_SECONDS
        assert stream_needs_update(existing, desired) is True


class TestSubjects:

    def test_topic_for_known_subjects(self):
        assert topic_for_subject('athlete-ally.hrv.raw-received') == 'hrv_raw_received'
        assert topic_for_subject('athlete-ally.sleep.normalized-stored') == 'sleep_normalized_stored'

    def test_vendor_webhook_subjects(self):
        assert vendor_webhook_subject('whoop') == 'vendor.whoop.webhook.received'
        assert topic_for_subject('vendor.whoop.webhook.received') == 'vendor_webhook_received'

    def test_unguarded_subject(self):
        assert topic_for_subject('dlq.hrv.max_deliver') is None


class TestConsumerSettings:

    def test_defaults(self):
        settings = ConsumerSettings('normalize-hrv-durable', 'athlete-ally.hrv.raw-received', 'dlq.hrv')
        assert settings.max_deliver == 5
        assert settings.ack_wait_ms == 30000

    def test_invalid_values(self):
        with pytest.raises(ValueError, match="max_deliver"):
            ConsumerSettings('d', 's', 'dlq.x', max_deliver=0)
        with pytest.raises(ValueError, match="ack_wait_ms"):
            ConsumerSettings('d', 's', 'dlq.x', ack_wait_ms=0)


class TestEventValidator:

    @pytest.fixture
    def clock(self):
        return SimpleNamespace(now=0.0)

    @pytest.fixture
    def cached_validator(self, metrics, clock):
        return EventValidator(cache_size=2, cache_ttl_seconds=60, metrics=metrics, clock=lambda: clock.now)

    def test_valid_event(self, cached_validator, sample_hrv_event):
        assert cached_validator.validate('hrv_raw_received', sample_hrv_event).valid

    def test_error_paths(self, cached_validator):
        result = cached_validator.validate('hrv_raw_received', {'eventId': 'e1', 'payload': {'date': '2024-1-1'}})

        assert result.valid is False
        paths = {error['path'] for error in result.errors}
        assert 'payload.userId' in paths
        assert 'payload.date' in paths
        assert 'hrv_raw_received:v1' in result.message

    def test_missing_rmssd(self, cached_validator):
        event = {'eventId': 'e1', 'payload': {'userId': 'u1', 'date': '2024-01-15'}}
        assert cached_validator.validate('hrv_raw_received', event).valid is False

    def test_unknown_topic_and_version_pass(self, cached_validator):
        assert cached_validator.validate('workout_logged', {'anything': True}).valid
        assert cached_validator.validate('hrv_raw_received', {'schemaVersion': 'v9'}).valid

    def test_disabled(self, metrics):
        validator = EventValidator(enabled=False, metrics=metrics)
        assert validator.validate('hrv_raw_received', {}).valid

    def test_cache_hits_and_misses(self, cached_validator, sample_hrv_event, metric_value):
        cached_validator.validate('hrv_raw_received', sample_hrv_event)
        cached_validator.validate('hrv_raw_received', sample_hrv_event)

        status = cached_validator.get_cache_status()
        assert status['hits'] == 1
        assert status['misses'] == 1
        assert status['hit_rate'] == 0.5
        assert metric_value('event_bus_schema_cache_hits_total') == 1
        assert metric_value('event_bus_schema_cache_misses_total') == 1

    def test_ttl_expiry(self, cached_validator, sample_hrv_event, clock):
        cached_validator.validate('hrv_raw_received', sample_hrv_event)
        clock.now = 61.0
        cached_validator.validate('hrv_raw_received', sample_hrv_event)

        assert cached_validator.get_cache_status()['misses'] == 2

    def test_lru_eviction(self, cached_validator, sample_hrv_event, sample_sleep_event):
        cached_validator.validate('hrv_raw_received', sample_hrv_event)
        cached_validator.validate('sleep_raw_received', sample_sleep_event)
        cached_validator.validate('hrv_raw_received', sample_hrv_event)
        cached_validator.validate('vendor_webhook_received', {
            'eventId': 'w1', 'vendor': 'oura', 'receivedAt': '2024-01-15T07:30:00Z', 'payload': {},
        })

        keys = cached_validator.get_cache_status()['keys']
        assert keys == ['hrv_raw_received:v1', 'vendor_webhook_received:v1']

    def test_clear_cache(self, cached_validator, sample_hrv_event):
        cached_validator.validate('hrv_raw_received', sample_hrv_event)
        cached_validator.clear_cache()
        assert cached_validator.get_cache_status()['size'] == 0


class TestEventBusPublish:

    @pytest.mark.asyncio
    async def test_publish_valid_event(self, connected_bus, fake_js, sample_hrv_event, metric_value):
        subject = EVENT_TOPICS['hrv_raw_received']

        ack = await connected_bus.publish(subject, sample_hrv_event)

        assert ack.seq == 1
        published_subject, data, headers = fake_js.published[0]
        assert published_subject == subject
        assert json.loads(data) == sample_hrv_event
        assert headers == {'Nats-Msg-Id': f"{subject}:hrv-test-1"}
        assert metric_value('event_bus_events_published_total', topic='hrv_raw_received', status='success') == 1

    @pytest.mark.asyncio
    async def test_invalid_event_never_reaches_broker(self, connected_bus, fake_js, metric_value):
        with pytest.raises(SchemaValidationError) as exc_info:
            await connected_bus.publish(EVENT_TOPICS['hrv_raw_received'], {'eventId': 'bad', 'payload': {}})

        assert exc_info.value.topic == 'hrv_raw_received'
        assert exc_info.value.errors
        assert fake_js.published == []
        assert connected_bus.stats['rejected'] == 1
        assert metric_value('event_bus_events_rejected_total', topic='hrv_raw_received', reason='schema_invalid') == 1

    @pytest.mark.asyncio
    async def test_validation_happens_before_connection_check(self, event_bus_config, validator, metrics):
        bus = EventBus(event_bus_config, validator, metrics)

        with pytest.raises(SchemaValidationError):
            await bus.publish(EVENT_TOPICS['sleep_raw_received'], {'eventId': 'bad', 'payload': {}})

    @pytest.mark.asyncio
    async def test_publish_requires_connection(self, event_bus_config, validator, metrics, sample_hrv_event):
        bus = EventBus(event_bus_config, validator, metrics)

        with pytest.raises(EventBusNotConnectedError):
            await bus.publish(EVENT_TOPICS['hrv_raw_received'], sample_hrv_event)

    @pytest.mark.asyncio
    async def test_publish_error_is_counted(self, connected_bus, fake_js, sample_hrv_event, metric_value):
        fake_js.fail_subjects['athlete-ally.'] = ConnectionError("broker down")

        with pytest.raises(ConnectionError):
            await connected_bus.publish(EVENT_TOPICS['hrv_raw_received'], sample_hrv_event)

        assert connected_bus.stats['publish_errors'] == 1
        assert metric_value('event_bus_events_published_total', topic='hrv_raw_received', status='error') == 1

    @pytest.mark.asyncio
    async def test_publish_raw_skips_validation(self, connected_bus, fake_js):
        await connected_bus.publish_raw('dlq.hrv.schema_invalid', b'not json', {'x-dlq-reason': 'schema_invalid'})
        assert fake_js.published == [('dlq.hrv.schema_invalid', b'not json', {'x-dlq-reason': 'schema_invalid'})]


class TestEventBusTopology:

    @pytest.mark.asyncio
    async def test_ensure_stream_created(self, connected_bus, fake_js):
        fake_js.stream_info.side_effect = NotFoundError()
        stream = get_stream_configs('multi')[0]

        assert await connected_bus.ensure_stream(stream) == 'created'
        fake_js.add_stream.assert_awaited_once()
        assert fake_js.add_stream.await_args.kwargs['config'].name == 'AA_CORE_HOT'

    @pytest.mark.asyncio
    async def test_ensure_stream_unchanged(self, connected_bus, fake_js):
        stream = get_stream_configs('multi')[1]
        fake_js.stream_info.return_value = SimpleNamespace(config=stream.to_stream_config())

        assert await connected_bus.ensure_stream(stream) == 'unchanged'
        fake_js.update_stream.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ensure_stream_updated(self, connected_bus, fake_js):
        stream = get_stream_configs('multi')[1]
        existing = stream.to_stream_config()
        existing.subjects = ['vendor.oura.>']
        fake_js.stream_info.return_value = SimpleNamespace(config=existing)

        assert await connected_bus.ensure_stream(stream) == 'updated'
        fake_js.update_stream.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_resolve_stream_falls_back(self, connected_bus, fake_js):
        fake_js.stream_info.side_effect = [NotFoundError(), SimpleNamespace()]

        assert await connected_bus.resolve_stream(['AA_CORE_HOT', 'ATHLETE_ALLY_EVENTS']) == 'ATHLETE_ALLY_EVENTS'

    @pytest.mark.asyncio
    async def test_resolve_stream_none_found(self, connected_bus, fake_js):
        fake_js.stream_info.side_effect = NotFoundError()

        with pytest.raises(StreamNotFoundError):
            await connected_bus.resolve_stream(['AA_DLQ'])

    @pytest.mark.asyncio
    async def test_ensure_consumer_creates_durable(self, connected_bus, fake_js):
        fake_js.consumer_info.side_effect = NotFoundError()
        settings = ConsumerSettings(
            'normalize-hrv-durable', 'athlete-ally.hrv.raw-received', 'dlq.hrv',
            max_deliver=4, ack_wait_ms=15000,
        )

        await connected_bus.ensure_consumer('AA_CORE_HOT', settings)

        stream, = fake_js.add_consumer.await_args.args
        config = fake_js.add_consumer.await_args.kwargs['config']
        assert stream == 'AA_CORE_HOT'
        assert config.durable_name == 'normalize-hrv-durable'
        assert config.filter_subject == 'athlete-ally.hrv.raw-received'
        assert config.max_deliver == 4
        assert config.ack_wait == 15.0

    @pytest.mark.asyncio
    async def test_ensure_consumer_reuses_existing(self, connected_bus, fake_js):
        fake_js.consumer_info.return_value = SimpleNamespace(name='normalize-hrv-durable')
        settings = ConsumerSettings('normalize-hrv-durable', 'athlete-ally.hrv.raw-received', 'dlq.hrv')

        await connected_bus.ensure_consumer('AA_CORE_HOT', settings)
        fake_js.add_consumer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_health_check(self, connected_bus, mock_nc):
        assert (await connected_bus.health_check())['status'] == 'healthy'
        mock_nc.is_connected = False
        assert (await connected_bus.health_check())['status'] == 'unhealthy'

    @pytest.mark.asyncio
    async def test_close_drains(self, connected_bus, mock_nc):
        await connected_bus.close()

        mock_nc.drain.assert_awaited_once()
        assert connected_bus.is_connected is False


class TestDurableSubscription:

    @pytest.fixture
    def pull(self):
        pull = AsyncMock()
        pull.fetch = AsyncMock(side_effect=nats.errors.TimeoutError)
        pull.unsubscribe = AsyncMock()
        return pull

    @pytest.mark.asyncio
    async def test_dispatch_extends_ack_deadline(self, pull, make_msg):
        handler = AsyncMock()
        subscription = DurableSubscription(pull, 'AA_CORE_HOT', 'durable', handler)
        messages = [make_msg('athlete-ally.hrv.raw-received', {}, stream_seq=i) for i in range(1, 5)]

        await subscription._dispatch(messages)

        assert handler.await_count == 4
        messages[2].in_progress.assert_awaited_once()
        messages[0].in_progress.assert_not_awaited()
        assert subscription.stats['messages'] == 4

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_stop_the_batch(self, pull, make_msg):
        handler = AsyncMock(side_effect=[RuntimeError("boom"), None])
        subscription = DurableSubscription(pull, 'AA_CORE_HOT', 'durable', handler)

        await subscription._dispatch([make_msg('s', {}), make_msg('s', {})])

        assert subscription.stats['handler_errors'] == 1
        assert subscription.stats['messages'] == 2

    @pytest.mark.asyncio
    async def test_start_and_stop(self, pull):
        subscription = DurableSubscription(pull, 'AA_CORE_HOT', 'durable', AsyncMock(), idle_backoff_seconds=0)

        subscription.start()
        assert subscription.running is True

        await subscription.stop()
        assert subscription.running is False
        pull.unsubscribe.assert_awaited_once()

        await subscription.stop()
        pull.unsubscribe.assert_awaited_once()
