"""HTTP routes of the ingest service."""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from aiohttp import web, web_request
from aiohttp.web_response import Response
from pydantic import BaseModel, Field, ValidationError, model_validator

from athlete_ally_pipeline.event_bus import EVENT_TOPICS, EventBus, SchemaValidationError, vendor_webhook_subject
from athlete_ally_pipeline.shared.metrics import PipelineMetrics

from .config.settings import IngestSettings
from .deduplication import WebhookDeduplicator
from .errors import IngestError, MalformedPayload, SignatureMismatch, WebhookNotConfigured
from .oura_oauth import OuraOAuthHandler
from .signature import verify_signature


logger = logging.getLogger(__name__)

API_PREFIX = '/api/v1'
DATE_PATTERN = r'^\d{4}-\d{2}-\d{2}$'


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class _IngestRequest(BaseModel):
    userId: str = Field(min_length=1)
    date: str = Field(pattern=DATE_PATTERN)
    capturedAt: Optional[datetime] = None
    vendor: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump(mode='json', exclude_none=True)
        payload.setdefault('capturedAt', _utc_now())
        payload.setdefault('raw', {})
        return payload


class HrvIngestRequest(_IngestRequest):
    rMSSD: Optional[float] = Field(default=None, gt=0)
    rmssd: Optional[float] = Field(default=None, gt=0)

    @model_validator(mode='after')
    def require_rmssd(self):
        if self.rMSSD is None and self.rmssd is None:
            raise ValueError("rmssd is required")
        return self

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload['rMSSD'] = self.rMSSD if self.rMSSD is not None else self.rmssd
        payload.pop('rmssd', None)
        return payload


class SleepIngestRequest(_IngestRequest):
    durationMinutes: float = Field(ge=0)
    qualityScore: Optional[float] = Field(default=None, ge=0, le=100)


def _error_details(error: ValidationError) -> List[Dict[str, Any]]:
    return [
        {'path': '.'.join(str(part) for part in err['loc']), 'message': err['msg']}
        for err in error.errors()
    ]


class IngestHandler:
    """Request handlers for direct ingest and vendor webhooks."""

    def __init__(
        self,
        settings: IngestSettings,
        event_bus: EventBus,
        metrics: PipelineMetrics,
        deduplicator: WebhookDeduplicator
    ):
        self.settings = settings
        self.event_bus = event_bus
        self.metrics = metrics
        self.deduplicator = deduplicator

    def _count(self, route: str, status: int):
        self.metrics.ingest_requests.labels(route=route, status=str(status)).inc()

    async def ingest_hrv(self, request: web_request.Request) -> Response:
        return await self._ingest(request, 'hrv', HrvIngestRequest, EVENT_TOPICS['hrv_raw_received'])

    async def ingest_sleep(self, request: web_request.Request) -> Response:
        return await self._ingest(request, 'sleep', SleepIngestRequest, EVENT_TOPICS['sleep_raw_received'])

    async def _ingest(
        self,
        request: web_request.Request,
        metric: str,
        model: Type[_IngestRequest],
        subject: str
    ) -> Response:
        route = f"/ingest/{metric}"

        try:
            try:
                body = await request.json()
            except ValueError as e:
                raise MalformedPayload(details=[{'path': '', 'message': 'Body is not valid JSON'}]) from e

            try:
                parsed = model.model_validate(body)
            except ValidationError as e:
                raise MalformedPayload(details=_error_details(e)) from e

            event = {
                'eventId': f"{metric}-{uuid.uuid4()}",
                'payload': parsed.to_payload(),
            }
            await self.event_bus.publish(subject, event)

        except MalformedPayload as e:
            self._count(route, 400)
            return web.json_response({'error': 'Invalid payload', 'details': e.details}, status=400)
        except SchemaValidationError as e:
            self._count(route, 400)
            return web.json_response({'error': 'Invalid payload', 'details': e.errors}, status=400)
        except Exception as e:
            logger.error(f"Failed to ingest {metric} event: {e}", exc_info=True)
            self._count(route, 500)
            return web.json_response({'error': 'Internal server error'}, status=500)

        logger.info(f"Published {event['eventId']} to {subject}")
        self._count(route, 200)
        return web.json_response({'status': 'received', 'timestamp': _utc_now()})

    def _verify_webhook(self, vendor: str, raw_body: bytes, headers) -> str:
        secret = self.settings.webhook_secrets()[vendor]
        if not secret:
            raise WebhookNotConfigured(f"No webhook secret configured for {vendor}")
        if not raw_body:
            raise MalformedPayload("Empty body")

        signature = headers.get(f"x-{vendor}-signature") or headers.get(f"x-{vendor}-signature-sha256")
        if not verify_signature(secret, raw_body, signature):
            self.metrics.signature_failures.labels(vendor=vendor).inc()
            raise SignatureMismatch("Invalid signature")
        return signature.strip().lower()

    async def webhook(self, request: web_request.Request) -> Response:
        vendor = request.match_info['vendor'].lower()
        route = f"/webhooks/{vendor}"

        if vendor not in self.settings.webhook_secrets():
            self._count('/webhooks/unknown', 404)
            return web.json_response({'error': 'Unknown vendor'}, status=404)

        idempotency_key = None
        try:
            raw_body = await request.read()
            signature = self._verify_webhook(vendor, raw_body, request.headers)

            try:
                payload = json.loads(raw_body)
            except ValueError as e:
                raise MalformedPayload("Invalid JSON") from e
            if not isinstance(payload, dict):
                raise MalformedPayload("Webhook body must be a JSON object")

            idempotency_key = request.headers.get('x-request-id') or signature
            if not self.deduplicator.check_and_remember(idempotency_key, vendor):
                self._count(route, 200)
                return web.json_response({'status': 'duplicate'})

            event = {
                'eventId': f"{vendor}-{uuid.uuid4()}",
                'vendor': vendor,
                'receivedAt': _utc_now(),
                'payload': payload,
            }
            await self.event_bus.publish(vendor_webhook_subject(vendor), event)

        except WebhookNotConfigured as e:
            logger.error(str(e))
            self._count(route, e.status)
            return web.json_response({'error': 'Webhook not configured'}, status=e.status)
        except IngestError as e:
            logger.warning(f"Rejected {vendor} webhook: {e}")
            self._count(route, e.status)
            return web.json_response({'error': str(e)}, status=e.status)
        except Exception as e:
            if idempotency_key:
                self.deduplicator.forget(idempotency_key, vendor)
            logger.error(f"Failed to handle {vendor} webhook: {e}", exc_info=True)
            self._count(route, 500)
            return web.json_response({'error': 'Internal server error'}, status=500)

        logger.info(f"Accepted {vendor} webhook {event['eventId']}")
        self._count(route, 200)
        return web.json_response({'status': 'ok'})

    async def health(self, request: web_request.Request) -> Response:
        try:
            bus_health = await self.event_bus.health_check()
            healthy = bus_health['status'] == 'healthy'
            body = {
                'status': 'healthy' if healthy else 'unhealthy',
                'service': self.settings.service_name,
                'timestamp': _utc_now(),
                'services': {'nats': 'connected' if healthy else 'disconnected'},
            }
            return web.json_response(body, status=200 if healthy else 503)
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    'status': 'unhealthy',
                    'service': self.settings.service_name,
                    'error': str(e),
                    'timestamp': _utc_now(),
                },
                status=503
            )

    async def metrics_endpoint(self, request: web_request.Request) -> Response:
        return web.Response(body=self.metrics.render(), headers={'Content-Type': self.metrics.content_type})


def create_app(
    settings: IngestSettings,
    event_bus: EventBus,
    metrics: PipelineMetrics,
    deduplicator: Optional[WebhookDeduplicator] = None,
    oauth_handler: Optional[OuraOAuthHandler] = None
) -> web.Application:
    """Build the aiohttp application with all ingest routes."""
    deduplicator = deduplicator or WebhookDeduplicator(
        ttl_seconds=settings.webhooks.idempotency_ttl_seconds,
        max_keys_per_vendor=settings.webhooks.max_tracked_keys,
    )
    handler = IngestHandler(settings, event_bus, metrics, deduplicator)

    app = web.Application()
    for prefix in ('', API_PREFIX):
        app.router.add_post(f'{prefix}/ingest/hrv', handler.ingest_hrv)
        app.router.add_post(f'{prefix}/ingest/sleep', handler.ingest_sleep)
    app.router.add_post('/webhooks/{vendor}', handler.webhook)
    app.router.add_get('/health', handler.health)
    app.router.add_get('/metrics', handler.metrics_endpoint)

    if oauth_handler is not None:
        oauth_handler.register(app)
        logger.info("Oura OAuth routes enabled")

    return app
