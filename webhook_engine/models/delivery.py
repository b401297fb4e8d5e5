"""Delivery state and append-only delivery log models."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    Enum,
    Float,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from webhook_engine.database import Base, JSONType, UTCDateTime


class DeliveryStatus(enum.Enum):
    PENDING = "pending"
    ATTEMPTING = "attempting"
    SUCCESS = "success"
    RETRYING = "retrying"
    ABANDONED = "abandoned"


TERMINAL_STATUSES = frozenset({DeliveryStatus.SUCCESS, DeliveryStatus.ABANDONED})
IN_FLIGHT_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.ATTEMPTING})


class Delivery(Base):
    """One logical delivery of an event to a webhook.

    attempt_count is the number of attempts already executed; the attempt in
    flight (if any) is number attempt_count + 1.
    """

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        UniqueConstraint("webhook_id", "event_id", name="uq_webhook_deliveries_webhook_event"),
    )

    delivery_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    webhook_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[DeliveryStatus] = mapped_column(
        Enum(DeliveryStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=DeliveryStatus.PENDING,
        index=True,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    request_snapshot: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    response_snapshot: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    last_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    scheduled_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    next_retry_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def succeeded(self) -> bool:
        return self.status == DeliveryStatus.SUCCESS

    @property
    def permanently_failed(self) -> bool:
        return self.status == DeliveryStatus.ABANDONED

    @property
    def next_attempt_number(self) -> int:
        return self.attempt_count + 1


class DeliveryLog(Base):
    """Append-only record of one executed attempt."""

    __tablename__ = "webhook_delivery_logs"
    __table_args__ = (
        UniqueConstraint("delivery_id", "attempt_number", name="uq_webhook_delivery_logs_attempt"),
    )

    log_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    delivery_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    webhook_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC), index=True
    )

    request_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    request_method: Mapped[str] = mapped_column(String(8), nullable=False, default="POST")
    request_headers: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    request_body: Mapped[str | None] = mapped_column(Text, nullable=True)

    response_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_headers: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    response_time_ms: Mapped[float | None] = mapped_column(Float, nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    resulting_status: Mapped[str] = mapped_column(String(16), nullable=False)
    retry_delay_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
