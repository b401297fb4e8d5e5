"""Webhook endpoint configuration model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, Enum, Float, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from webhook_engine.database import Base, JSONType, UTCDateTime


class AuthMode(enum.Enum):
    NONE = "none"
    API_KEY = "api_key"
    BEARER_TOKEN = "bearer_token"
    HMAC_SHA256 = "hmac_sha256"
    OAUTH2 = "oauth2"


class IntegrationType(enum.Enum):
    CUSTOM = "custom"
    SLACK = "slack"
    MICROSOFT_TEAMS = "microsoft_teams"
    EMAIL = "email"
    SMS = "sms"
    DISCORD = "discord"
    WEBHOOK = "webhook"


class Priority(enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.CRITICAL: 3,
    Priority.HIGH: 2,
    Priority.NORMAL: 1,
    Priority.LOW: 0,
}

CONFIG_VERSION = 1


class Webhook(Base):
    __tablename__ = "webhooks"

    webhook_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    events: Mapped[list] = mapped_column(JSONType, nullable=False)
    event_filters: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    auth_mode: Mapped[AuthMode] = mapped_column(
        Enum(AuthMode, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=AuthMode.NONE,
    )
    auth_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    secret: Mapped[str | None] = mapped_column(String(256), nullable=True)
    custom_headers: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    integration_type: Mapped[IntegrationType] = mapped_column(
        Enum(IntegrationType, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=IntegrationType.CUSTOM,
    )
    integration_config: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    initial_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    backoff_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)
    max_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=3_600_000)
    rate_limit_per_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=1000)
    rate_limit_per_day: Mapped[int] = mapped_column(Integer, nullable=False, default=10000)

    priority: Mapped[Priority] = mapped_column(
        Enum(Priority, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=Priority.NORMAL,
    )
    config_version: Mapped[int] = mapped_column(Integer, nullable=False, default=CONFIG_VERSION)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
    last_triggered_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    def subscribes_to(self, event_type: str) -> bool:
        return event_type in self.events

    def backoff_delay_ms(self, attempt_number: int) -> int:
        """Delay before the retry that follows a failed attempt_number."""
        delay = self.initial_delay_ms * (self.backoff_multiplier ** (attempt_number - 1))
        return int(min(delay, self.max_delay_ms))
