"""Create webhooks, webhook_events, webhook_deliveries and webhook_delivery_logs.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "webhooks",
        sa.Column("webhook_id", sa.Uuid(), primary_key=True),
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("url", sa.String(2048), nullable=False),
        sa.Column("events", JSONB, nullable=False),
        sa.Column("event_filters", JSONB, nullable=False, server_default="{}"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "auth_mode",
            sa.Enum("none", "api_key", "bearer_token", "hmac_sha256", "oauth2", name="authmode"),
            nullable=False,
            server_default="none",
        ),
        sa.Column("auth_config", JSONB, nullable=False, server_default="{}"),
        sa.Column("secret", sa.String(256), nullable=True),
        sa.Column("custom_headers", JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "integration_type",
            sa.Enum(
                "custom", "slack", "microsoft_teams", "email", "sms", "discord", "webhook",
                name="integrationtype",
            ),
            nullable=False,
            server_default="custom",
        ),
        sa.Column("integration_config", JSONB, nullable=False, server_default="{}"),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("initial_delay_ms", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("backoff_multiplier", sa.Float(), nullable=False, server_default="2.0"),
        sa.Column("max_delay_ms", sa.Integer(), nullable=False, server_default="3600000"),
        sa.Column("rate_limit_per_hour", sa.Integer(), nullable=False, server_default="1000"),
        sa.Column("rate_limit_per_day", sa.Integer(), nullable=False, server_default="10000"),
        sa.Column(
            "priority",
            sa.Enum("critical", "high", "normal", "low", name="priority"),
            nullable=False,
            server_default="normal",
        ),
        sa.Column("config_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_webhooks_owner_id", "webhooks", ["owner_id"])

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.Uuid(), primary_key=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("owner_id", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_webhook_events_event_type", "webhook_events", ["event_type"])

    op.create_table(
        "webhook_deliveries",
        sa.Column("delivery_id", sa.Uuid(), primary_key=True),
        sa.Column("webhook_id", sa.Uuid(), nullable=False),
        sa.Column("event_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "attempting", "success", "retrying", "abandoned", name="deliverystatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("request_snapshot", JSONB, nullable=True),
        sa.Column("response_snapshot", JSONB, nullable=True),
        sa.Column("last_status_code", sa.Integer(), nullable=True),
        sa.Column("last_error_kind", sa.String(32), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("webhook_id", "event_id", name="uq_webhook_deliveries_webhook_event"),
    )
    op.create_index("ix_webhook_deliveries_webhook_id", "webhook_deliveries", ["webhook_id"])
    op.create_index("ix_webhook_deliveries_event_id", "webhook_deliveries", ["event_id"])
    op.create_index("ix_webhook_deliveries_status", "webhook_deliveries", ["status"])
    op.create_index("ix_webhook_deliveries_next_retry_at", "webhook_deliveries", ["next_retry_at"])

    op.create_table(
        "webhook_delivery_logs",
        sa.Column("log_id", sa.Uuid(), primary_key=True),
        sa.Column("delivery_id", sa.Uuid(), nullable=False),
        sa.Column("webhook_id", sa.Uuid(), nullable=False),
        sa.Column("event_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("request_url", sa.String(2048), nullable=False),
        sa.Column("request_method", sa.String(8), nullable=False, server_default="POST"),
        sa.Column("request_headers", JSONB, nullable=False, server_default="{}"),
        sa.Column("request_body", sa.Text(), nullable=True),
        sa.Column("response_status_code", sa.Integer(), nullable=True),
        sa.Column("response_headers", JSONB, nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("response_time_ms", sa.Float(), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_kind", sa.String(32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("resulting_status", sa.String(16), nullable=False),
        sa.Column("retry_delay_ms", sa.Integer(), nullable=True),
        sa.UniqueConstraint("delivery_id", "attempt_number", name="uq_webhook_delivery_logs_attempt"),
    )
    op.create_index("ix_webhook_delivery_logs_delivery_id", "webhook_delivery_logs", ["delivery_id"])
    op.create_index("ix_webhook_delivery_logs_webhook_id", "webhook_delivery_logs", ["webhook_id"])
    op.create_index("ix_webhook_delivery_logs_attempted_at", "webhook_delivery_logs", ["attempted_at"])


def downgrade() -> None:
    op.drop_table("webhook_delivery_logs")
    op.drop_table("webhook_deliveries")
    op.drop_table("webhook_events")
    op.drop_table("webhooks")
    op.execute("DROP TYPE IF EXISTS deliverystatus")
    op.execute("DROP TYPE IF EXISTS priority")
    op.execute("DROP TYPE IF EXISTS integrationtype")
    op.execute("DROP TYPE IF EXISTS authmode")
