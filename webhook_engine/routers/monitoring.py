"""System-wide health and alert endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query

from webhook_engine.deps import get_engine
from webhook_engine.schemas.monitoring import Alert, Escalation, SystemHealth
from webhook_engine.services.engine import WebhookEngine

router = APIRouter(prefix="/monitoring", tags=["monitoring"])


@router.get("/health", response_model=SystemHealth)
async def system_health(engine: WebhookEngine = Depends(get_engine)) -> SystemHealth:
    return await engine.monitoring.system_health()


@router.get("/alerts", response_model=list[Alert])
async def list_alerts(
    webhook_id: uuid.UUID | None = None,
    limit: int = Query(50, ge=1, le=500),
    engine: WebhookEngine = Depends(get_engine),
) -> list[Alert]:
    """Most recent alerts first."""
    return engine.monitoring.recent_alerts(webhook_id=webhook_id, limit=limit)


@router.get("/escalations", response_model=list[Escalation])
async def list_escalations(
    limit: int = Query(50, ge=1, le=500),
    engine: WebhookEngine = Depends(get_engine),
) -> list[Escalation]:
    return engine.monitoring.recent_escalations(limit=limit)
