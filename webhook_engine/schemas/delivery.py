"""Pydantic v2 schemas for deliveries, delivery logs, and events."""

import uuid
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class EventPublish(BaseModel):
    event_type: str = Field(..., min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    event_id: uuid.UUID | None = None
    owner_id: str | None = Field(None, max_length=128)


class EventAccepted(BaseModel):
    event_id: uuid.UUID
    event_type: str
    matched_webhooks: int


class DeliveryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    delivery_id: uuid.UUID
    webhook_id: uuid.UUID
    event_id: uuid.UUID
    event_type: str
    status: str
    attempt_count: int
    max_attempts: int
    last_status_code: int | None
    last_error_kind: str | None
    last_error: str | None
    response_snapshot: dict | None = None
    scheduled_at: datetime
    next_retry_at: datetime | None
    updated_at: datetime
    completed_at: datetime | None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class DeliveryLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    log_id: uuid.UUID
    delivery_id: uuid.UUID
    webhook_id: uuid.UUID
    event_id: uuid.UUID
    event_type: str
    attempt_number: int
    attempted_at: datetime
    request_url: str
    request_method: str
    request_headers: dict[str, str]
    request_body: str | None
    response_status_code: int | None
    response_headers: dict[str, str] | None
    response_body: str | None
    response_time_ms: float | None
    success: bool
    error_kind: str | None
    error_message: str | None
    resulting_status: str
    retry_delay_ms: int | None


class DeliveryLogFilter(BaseModel):
    """Query filters for the delivery log."""

    webhook_id: uuid.UUID | None = None
    delivery_id: uuid.UUID | None = None
    success: bool | None = None
    resulting_status: str | None = None
    error_kind: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    limit: int = Field(100, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class RedeliveryRequest(BaseModel):
    """Re-queue abandoned deliveries, either by id or everything recent for one webhook."""

    delivery_ids: list[uuid.UUID] | None = Field(None, min_length=1, max_length=500)
    webhook_id: uuid.UUID | None = None
    max_age_hours: int = Field(24, ge=1, le=168)

    @model_validator(mode="after")
    def check_target(self) -> "RedeliveryRequest":
        if self.delivery_ids is None and self.webhook_id is None:
            raise ValueError("either delivery_ids or webhook_id is required")
        return self

    @property
    def max_age(self) -> timedelta:
        return timedelta(hours=self.max_age_hours)


class RedeliveryResult(BaseModel):
    requeued: list[uuid.UUID]
    skipped: list[uuid.UUID] = Field(default_factory=list)
