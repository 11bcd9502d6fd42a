"""Event contracts keyed by (topic, schema version)."""

from datetime import datetime
from typing import Any, Dict, Literal, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, model_validator


DATE_PATTERN = r'^\d{4}-\d{2}-\d{2}$'

Vendor = Literal['oura', 'whoop', 'unknown']


class _Payload(BaseModel):
    model_config = ConfigDict(extra='allow')

    userId: str = Field(min_length=1)
    date: str = Field(pattern=DATE_PATTERN)
    capturedAt: Optional[datetime] = None
    vendor: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None


class HrvRawPayload(_Payload):
    """Raw HRV reading. One of the rMSSD spellings must be present."""
    rMSSD: Optional[float] = Field(default=None, ge=0)
    rmssd: Optional[float] = Field(default=None, ge=0)
    rmssd_ms: Optional[float] = Field(default=None, ge=0)
    lnRMSSD: Optional[float] = None
    readinessScore: Optional[float] = Field(default=None, ge=0, le=100)

    @model_validator(mode='after')
    def require_rmssd(self):
        if self.rMSSD is None and self.rmssd is None and self.rmssd_ms is None:
            raise ValueError("one of rMSSD, rmssd or rmssd_ms is required")
        return self


class SleepRawPayload(_Payload):
    """Raw sleep summary. One of the duration spellings must be present."""
    durationMinutes: Optional[float] = Field(default=None, ge=0)
    duration_minutes: Optional[float] = Field(default=None, ge=0)
    totalSleep: Optional[float] = Field(default=None, ge=0)
    qualityScore: Optional[float] = Field(default=None, ge=0, le=100)
    score: Optional[float] = Field(default=None, ge=0, le=100)

    @model_validator(mode='after')
    def require_duration(self):
        if self.durationMinutes is None and self.duration_minutes is None and self.totalSleep is None:
            raise ValueError("one of durationMinutes, duration_minutes or totalSleep is required")
        return self


class _Event(BaseModel):
    model_config = ConfigDict(extra='allow')

    eventId: str = Field(min_length=1)
    schemaVersion: Optional[str] = None


class HrvRawReceived(_Event):
    payload: HrvRawPayload


class SleepRawReceived(_Event):
    payload: SleepRawPayload


class HrvRecord(BaseModel):
    userId: str = Field(min_length=1)
    date: str = Field(pattern=DATE_PATTERN)
    rMSSD: float = Field(ge=0)
    lnRMSSD: float
    readinessScore: Optional[float] = Field(default=None, ge=0, le=100)
    vendor: Vendor
    capturedAt: datetime


class SleepRecord(BaseModel):
    userId: str = Field(min_length=1)
    date: str = Field(pattern=DATE_PATTERN)
    durationMinutes: float = Field(ge=0)
    qualityScore: Optional[float] = Field(default=None, ge=0, le=100)
    vendor: Vendor
    capturedAt: datetime


class HrvNormalizedStored(_Event):
    record: HrvRecord


class SleepNormalizedStored(_Event):
    record: SleepRecord


class VendorWebhookReceived(_Event):
    vendor: str = Field(min_length=1)
    receivedAt: datetime
    payload: Dict[str, Any]


CONTRACTS: Dict[Tuple[str, str], Type[BaseModel]] = {
    ('hrv_raw_received', 'v1'): HrvRawReceived,
    ('hrv_normalized_stored', 'v1'): HrvNormalizedStored,
    ('sleep_raw_received', 'v1'): SleepRawReceived,
    ('sleep_normalized_stored', 'v1'): SleepNormalizedStored,
    ('vendor_webhook_received', 'v1'): VendorWebhookReceived,
}
