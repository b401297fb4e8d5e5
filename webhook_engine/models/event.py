"""Published domain event model."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from webhook_engine.database import Base, JSONType, UTCDateTime


class EventType(enum.Enum):
    # Documents
    DOCUMENT_UPLOADED = "document.uploaded"
    DOCUMENT_PROCESSING_STARTED = "document.processing.started"
    DOCUMENT_PROCESSING_COMPLETED = "document.processing.completed"
    DOCUMENT_PROCESSING_FAILED = "document.processing.failed"
    DOCUMENT_ANALYSIS_COMPLETED = "document.analysis.completed"
    DOCUMENT_DELETED = "document.deleted"

    # Chat
    CHAT_CONVERSATION_CREATED = "chat.conversation.created"
    CHAT_MESSAGE_SENT = "chat.message.sent"
    CHAT_MESSAGE_RECEIVED = "chat.message.received"
    CHAT_AI_RESPONSE_GENERATED = "chat.ai.response.generated"
    CHAT_CONVERSATION_ARCHIVED = "chat.conversation.archived"

    # Analytics
    ANALYTICS_USAGE_THRESHOLD = "analytics.usage.threshold"
    ANALYTICS_COST_ALERT = "analytics.cost.alert"
    ANALYTICS_PERFORMANCE_DEGRADED = "analytics.performance.degraded"
    ANALYTICS_QUOTA_EXCEEDED = "analytics.quota.exceeded"

    # Compliance
    COMPLIANCE_POLICY_VIOLATION = "compliance.policy.violation"
    COMPLIANCE_AUDIT_TRIGGER = "compliance.audit.trigger"
    COMPLIANCE_REGULATORY_ALERT = "compliance.regulatory.alert"
    COMPLIANCE_DATA_BREACH_DETECTED = "compliance.data.breach.detected"

    # System
    SYSTEM_HEALTH_ALERT = "system.health.alert"
    SYSTEM_ERROR_CRITICAL = "system.error.critical"
    SYSTEM_MAINTENANCE_SCHEDULED = "system.maintenance.scheduled"
    SYSTEM_MAINTENANCE_STARTED = "system.maintenance.started"
    SYSTEM_MAINTENANCE_COMPLETED = "system.maintenance.completed"
    SYSTEM_BACKUP_COMPLETED = "system.backup.completed"
    SYSTEM_BACKUP_FAILED = "system.backup.failed"


KNOWN_EVENT_TYPES = frozenset(e.value for e in EventType)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    event_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    owner_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=lambda: datetime.now(UTC)
    )
