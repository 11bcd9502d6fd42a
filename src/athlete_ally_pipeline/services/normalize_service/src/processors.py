"""Domain processors: raw event -> canonical record -> upsert -> normalized-stored event."""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from pydantic import BaseModel, ValidationError

from athlete_ally_pipeline.event_bus import EVENT_TOPICS, EventBus
from athlete_ally_pipeline.event_bus.contracts import HrvRecord, SleepRecord

from .errors import NonRetryableError
from .repository import HRV_TABLE, SLEEP_TABLE, RecordRepository, UpsertResult


logger = logging.getLogger(__name__)

KNOWN_VENDORS = ('oura', 'whoop')


@dataclass
class ProcessResult:
    record: Optional[Dict[str, Any]] = None
    upsert: Optional[UpsertResult] = None


def first_present(payload: Mapping[str, Any], keys: Iterable[str]) -> Any:
    """Value of the first key that is present and not None."""
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def detect_vendor(payload: Mapping[str, Any]) -> str:
    raw = payload.get('raw')
    source = payload.get('vendor') or (raw.get('source') if isinstance(raw, dict) else None)
    if isinstance(source, str) and source.strip().lower() in KNOWN_VENDORS:
        return source.strip().lower()
    return 'unknown'


def _captured_at(payload: Mapping[str, Any]) -> Any:
    return payload.get('capturedAt') or datetime.now(timezone.utc)


def _build(model, **fields) -> BaseModel:
    try:
        return model(**fields)
    except ValidationError as e:
        raise NonRetryableError(f"Normalized {model.__name__} is invalid: {e}") from e


def normalize_hrv(payload: Mapping[str, Any]) -> HrvRecord:
    """
    Canonical HRV record from a raw payload.

    rMSSD is taken from ``rMSSD``, then ``rmssd``, then ``rmssd_ms``.
    lnRMSSD is derived when absent, which needs rMSSD > 0.
    """
    rmssd = first_present(payload, ('rMSSD', 'rmssd', 'rmssd_ms'))
    if rmssd is None:
        raise NonRetryableError("HRV payload has no rMSSD value")
    rmssd = float(rmssd)

    ln_rmssd = payload.get('lnRMSSD')
    if ln_rmssd is None:
        if rmssd <= 0:
            raise NonRetryableError(f"Cannot derive lnRMSSD from rMSSD={rmssd}")
        ln_rmssd = math.log(rmssd)

    return _build(
        HrvRecord,
        userId=payload.get('userId'),
        date=payload.get('date'),
        rMSSD=rmssd,
        lnRMSSD=float(ln_rmssd),
        readinessScore=payload.get('readinessScore'),
        vendor=detect_vendor(payload),
        capturedAt=_captured_at(payload),
    )


def normalize_sleep(payload: Mapping[str, Any]) -> SleepRecord:
    """
    Canonical sleep record from a raw payload.

    Duration comes from ``durationMinutes``, then ``duration_minutes``, then
    ``totalSleep``; quality from ``qualityScore``, then ``score``.
    """
    duration = first_present(payload, ('durationMinutes', 'duration_minutes', 'totalSleep'))
    if duration is None:
        raise NonRetryableError("Sleep payload has no duration")

    return _build(
        SleepRecord,
        userId=payload.get('userId'),
        date=payload.get('date'),
        durationMinutes=float(duration),
        qualityScore=first_present(payload, ('qualityScore', 'score')),
        vendor=detect_vendor(payload),
        capturedAt=_captured_at(payload),
    )


class Processor(ABC):
    """Turns one validated raw event into stored state."""

    domain: str
    raw_topic: str

    @abstractmethod
    async def process(self, event: Dict[str, Any]) -> ProcessResult:
        ...


class _MetricProcessor(Processor):
    table: str
    stored_subject: str

    def __init__(self, repository: RecordRepository, event_bus: EventBus):
        self.repository = repository
        self.event_bus = event_bus

    @abstractmethod
    def normalize(self, payload: Mapping[str, Any]) -> BaseModel:
        ...

    async def process(self, event: Dict[str, Any]) -> ProcessResult:
        payload = event.get('payload')
        if not isinstance(payload, dict):
            raise NonRetryableError("Event has no payload object")

        record = self.normalize(payload)
        upsert = await self.repository.upsert(self.table, record.model_dump())

        stored = record.model_dump(mode='json')
        await self.event_bus.publish(self.stored_subject, {
            'eventId': event['eventId'],
            'record': stored,
        })

        logger.info(
            f"{'Inserted' if upsert.inserted else 'Updated'} {self.domain} record "
            f"for {record.userId} on {record.date}"
        )
        return ProcessResult(record=stored, upsert=upsert)


class HrvProcessor(_MetricProcessor):
    domain = 'hrv'
    raw_topic = 'hrv_raw_received'
    table = HRV_TABLE.name
    stored_subject = EVENT_TOPICS['hrv_normalized_stored']

    def normalize(self, payload: Mapping[str, Any]) -> HrvRecord:
        return normalize_hrv(payload)


class SleepProcessor(_MetricProcessor):
    domain = 'sleep'
    raw_topic = 'sleep_raw_received'
    table = SLEEP_TABLE.name
    stored_subject = EVENT_TOPICS['sleep_normalized_stored']

    def normalize(self, payload: Mapping[str, Any]) -> SleepRecord:
        return normalize_sleep(payload)


class VendorWebhookProcessor(Processor):
    """Accepts validated vendor webhook envelopes. Nothing is stored yet."""

    domain = 'oura'
    raw_topic = 'vendor_webhook_received'

    def __init__(self, vendor: str = 'oura'):
        self.domain = vendor

    async def process(self, event: Dict[str, Any]) -> ProcessResult:
        payload = event.get('payload') or {}
        logger.info(
            f"Received {event.get('vendor')} webhook {event.get('eventId')} "
            f"(event_type={payload.get('event_type')}, data_type={payload.get('data_type')})"
        )
        return ProcessResult()
