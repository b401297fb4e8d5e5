"""FastAPI dependencies shared by the routers."""

from datetime import UTC, datetime

from fastapi import Header, Request

from webhook_engine.services.engine import WebhookEngine


def get_engine(request: Request) -> WebhookEngine:
    return request.app.state.engine


def get_owner_id(x_owner_id: str = Header(..., min_length=1, max_length=128)) -> str:
    """Owner identity is asserted by the caller (authentication happens upstream)."""
    return x_owner_id


def as_utc(value: datetime | None) -> datetime | None:
    """Query datetimes without an offset are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
