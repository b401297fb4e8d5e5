"""Pydantic v2 schemas for analytics, health, and alerting."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

AlertType = Literal[
    "response_time_high",
    "success_rate_low",
    "consecutive_failures",
]
Severity = Literal["low", "medium", "high", "critical"]


class DeliveryMetrics(BaseModel):
    webhook_id: uuid.UUID
    period_start: datetime
    period_end: datetime
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    success_rate: float
    average_response_time_ms: float
    p50_response_time_ms: float
    p95_response_time_ms: float
    p99_response_time_ms: float
    status_code_breakdown: dict[str, int] = Field(default_factory=dict)
    error_breakdown: dict[str, int] = Field(default_factory=dict)
    event_breakdown: dict[str, int] = Field(default_factory=dict)
    delivery_status_breakdown: dict[str, int] = Field(default_factory=dict)


class TrendThresholds(BaseModel):
    success_rate: float = Field(0.95, ge=0.0, le=1.0)
    response_time_ms: float = Field(5000.0, gt=0)
    window_minutes: int = Field(60, ge=1)


class Alert(BaseModel):
    alert_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    webhook_id: uuid.UUID
    type: AlertType
    severity: Severity
    message: str
    threshold: float | None = None
    current_value: float | None = None
    created_at: datetime


class TrendAnalysis(BaseModel):
    webhook_id: uuid.UUID
    window_start: datetime
    window_end: datetime
    degradation_detected: bool
    success_rate: float
    average_response_time_ms: float
    alerts: list[Alert] = Field(default_factory=list)


class CriticalFailureSignal(BaseModel):
    """Emitted by the scheduler when a delivery is abandoned."""

    webhook_id: uuid.UUID
    delivery_id: uuid.UUID
    event_id: uuid.UUID
    attempts: int
    error_kind: str | None = None
    error: str | None = None
    occurred_at: datetime


class Escalation(BaseModel):
    webhook_id: uuid.UUID
    escalation_level: Literal["immediate"] = "immediate"
    consecutive_failures: int
    threshold: int
    last_delivery_id: uuid.UUID
    message: str
    created_at: datetime


class WebhookHealth(BaseModel):
    webhook_id: uuid.UUID
    webhook_name: str
    is_healthy: bool
    success_rate: float
    error_rate: float
    average_response_time_ms: float
    consecutive_failures: int
    total_deliveries: int
    last_successful_delivery: datetime | None = None
    alerts: list[Alert] = Field(default_factory=list)
    checked_at: datetime


class FailingWebhook(BaseModel):
    webhook_id: uuid.UUID
    name: str
    failure_rate: float
    consecutive_failures: int


class SystemHealth(BaseModel):
    overall_health: Literal["healthy", "degraded", "critical"]
    total_webhooks: int
    active_webhooks: int
    healthy_webhooks: int
    degraded_webhooks: int
    critical_webhooks: int
    top_failing_webhooks: list[FailingWebhook] = Field(default_factory=list)
    recent_alerts: list[Alert] = Field(default_factory=list)
    checked_at: datetime
