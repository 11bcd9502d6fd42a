"""End-to-end flow: HTTP ingest -> JetStream -> normalize consumer -> storage."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import nats.errors
import pytest
from aiohttp.test_utils import TestClient, TestServer

from athlete_ally_pipeline.event_bus import EVENT_TOPICS
from athlete_ally_pipeline.services.ingest_service.src.app import create_app
from athlete_ally_pipeline.services.ingest_service.src.config.settings import IngestSettings
from athlete_ally_pipeline.services.ingest_service.src.signature import compute_signature
from athlete_ally_pipeline.services.normalize_service.src.config.settings import NormalizeSettings
from athlete_ally_pipeline.services.normalize_service.src.consumer import NormalizationConsumer, Outcome
from athlete_ally_pipeline.services.normalize_service.src.health import HealthCheckHandler, create_health_app
from athlete_ally_pipeline.services.normalize_service.src.main import NormalizeService
from athlete_ally_pipeline.services.normalize_service.src.processors import (
    HrvProcessor,
    SleepProcessor,
    VendorWebhookProcessor,
)

pytestmark = pytest.mark.integration

SECRET = 'oura-webhook-secret'


@pytest.fixture
def normalize_settings():
    return NormalizeSettings()


@pytest.fixture
async def ingest_client(connected_bus, metrics):
    app = create_app(IngestSettings(oura={'webhook_secret': SECRET}), connected_bus, metrics)
    async with TestClient(TestServer(app)) as test_client:
        yield test_client


def deliveries(fake_js, subject, make_msg):
    """Turn what the ingest side published into consumer deliveries."""
    return [
        make_msg(s, data, stream_seq=index, headers=headers)
        for index, (s, data, headers) in enumerate(fake_js.published, start=1)
        if s == subject
    ]


class TestIngestToNormalize:

    @pytest.mark.asyncio
    async def test_hrv_reading_is_stored_and_announced(
        self, ingest_client, connected_bus, fake_js, validator, metrics, repository, normalize_settings, make_msg
    ):
        response = await ingest_client.post('/ingest/hrv', json={
            'userId': 'athlete-1', 'date': '2024-01-15', 'rMSSD': 42.5, 'raw': {'source': 'oura'},
        })
        assert response.status == 200

        consumer = NormalizationConsumer(
            normalize_settings.hrv.to_consumer_settings(),
            HrvProcessor(repository, connected_bus),
            connected_bus,
            validator,
            metrics,
        )
        msg, = deliveries(fake_js, EVENT_TOPICS['hrv_raw_received'], make_msg)

        assert await consumer.handle(msg) is Outcome.ACKED

        row = repository.rows[('hrv_data', 'athlete-1', '2024-01-15')]
        assert row['rMSSD'] == 42.5
        assert round(row['lnRMSSD'], 2) == 3.75
        assert row['vendor'] == 'oura'

        stored, = fake_js.events(EVENT_TOPICS['hrv_normalized_stored'])
        raw_event = json.loads(msg.data)
        assert stored['eventId'] == raw_event['eventId']
        assert stored['record']['userId'] == 'athlete-1'

    @pytest.mark.asyncio
    async def test_sleep_redelivery_updates_in_place(
        self, ingest_client, connected_bus, fake_js, validator, metrics, repository, normalize_settings, make_msg
    ):
        await ingest_client.post('/ingest/sleep', json={
            'userId': 'athlete-1', 'date': '2024-01-15', 'durationMinutes': 430,
        })
        await ingest_client.post('/ingest/sleep', json={
            'userId': 'athlete-1', 'date': '2024-01-15', 'durationMinutes': 452, 'qualityScore': 81,
        })

        consumer = NormalizationConsumer(
            normalize_settings.sleep.to_consumer_settings(),
            SleepProcessor(repository, connected_bus),
            connected_bus,
            validator,
            metrics,
        )
        for msg in deliveries(fake_js, EVENT_TOPICS['sleep_raw_received'], make_msg):
            assert await consumer.handle(msg) is Outcome.ACKED

        assert len(repository.rows) == 1
        row = repository.rows[('sleep_data', 'athlete-1', '2024-01-15')]
        assert row['durationMinutes'] == 452
        assert row['qualityScore'] == 81

    @pytest.mark.asyncio
    async def test_webhook_reaches_vendor_consumer(
        self, ingest_client, connected_bus, fake_js, validator, metrics, normalize_settings, make_msg
    ):
        raw = json.dumps({'event_type': 'create', 'data_type': 'daily_sleep'}).encode('utf-8')
        response = await ingest_client.post(
            '/webhooks/oura', data=raw, headers={'x-oura-signature': compute_signature(SECRET, raw)}
        )
        assert response.status == 200

        consumer = NormalizationConsumer(
            normalize_settings.oura.to_consumer_settings(),
            VendorWebhookProcessor('oura'),
            connected_bus,
            validator,
            metrics,
        )
        msg, = deliveries(fake_js, 'vendor.oura.webhook.received', make_msg)

        assert await consumer.handle(msg) is Outcome.ACKED
        msg.ack.assert_awaited_once()


class TestNormalizeService:

    @pytest.fixture
    def service(self, normalize_settings, mock_nc, fake_js, repository):
        service = NormalizeService(normalize_settings)
        service.event_bus.nc = mock_nc
        service.event_bus.js = fake_js
        service.repository = repository
        return service

    @pytest.mark.asyncio
    async def test_starts_one_consumer_per_domain(self, service, fake_js):
        fake_js.stream_info.return_value = SimpleNamespace()
        fake_js.consumer_info.return_value = SimpleNamespace()
        pull = AsyncMock()
        pull.fetch = AsyncMock(side_effect=nats.errors.TimeoutError)
        fake_js.pull_subscribe_bind.return_value = pull

        await service._start_consumers()

        streams = {consumer.domain: consumer.stream_name for consumer in service.consumers}
        assert streams == {'hrv': 'AA_CORE_HOT', 'sleep': 'AA_CORE_HOT', 'oura': 'AA_VENDOR_HOT'}
        fake_js.add_consumer.assert_not_awaited()

        for consumer in service.consumers:
            await consumer.stop()

    @pytest.mark.asyncio
    async def test_disabled_domain_is_skipped(self, fake_js, mock_nc, repository):
        service = NormalizeService(NormalizeSettings(oura={'enabled': False}))
        service.event_bus.nc = mock_nc
        service.event_bus.js = fake_js
        service.repository = repository
        fake_js.stream_info.return_value = SimpleNamespace()
        fake_js.consumer_info.return_value = SimpleNamespace()
        pull = AsyncMock()
        pull.fetch = AsyncMock(side_effect=nats.errors.TimeoutError)
        fake_js.pull_subscribe_bind.return_value = pull

        await service._start_consumers()

        assert [consumer.domain for consumer in service.consumers] == ['hrv', 'sleep']
        for consumer in service.consumers:
            await consumer.stop()

    @pytest.mark.asyncio
    async def test_health_reports_dependencies(self, service):
        service.repository = Mock()
        service.repository.health_check = AsyncMock(return_value={'status': 'healthy'})

        health = await service.health_check()
        assert health['status'] == 'healthy'
        assert health['services'] == {'database': 'connected', 'nats': 'connected'}

        service.repository.health_check.return_value = {'status': 'unhealthy'}
        health = await service.health_check()
        assert health['status'] == 'unhealthy'
        assert health['services']['database'] == 'disconnected'

    @pytest.mark.asyncio
    async def test_health_endpoint(self, service):
        service.repository = Mock()
        service.repository.health_check = AsyncMock(return_value={'status': 'healthy'})
        handler = HealthCheckHandler('normalize-service', service.health_check, service.metrics)

        async with TestClient(TestServer(create_health_app(handler))) as client:
            response = await client.get('/health')
            assert response.status == 200
            assert (await response.json())['services']['nats'] == 'connected'

            service.event_bus.nc.is_connected = False
            response = await client.get('/health')
            assert response.status == 503

            response = await client.get('/metrics')
            assert response.status == 200
            assert 'normalize_messages_total' in await response.text()
