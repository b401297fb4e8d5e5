"""Webhook registration, connectivity test and per-webhook analytics endpoints."""

import uuid
from datetime import datetime, timedelta
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse

from webhook_engine.deps import as_utc, get_engine, get_owner_id
from webhook_engine.exceptions import WebhookNotFoundError
from webhook_engine.models.delivery import DeliveryStatus
from webhook_engine.schemas.delivery import DeliveryResponse
from webhook_engine.schemas.monitoring import DeliveryMetrics, WebhookHealth
from webhook_engine.schemas.webhook import (
    ConnectivityResult,
    ConnectivityTestRequest,
    WebhookCreatedResponse,
    WebhookResponse,
)
from webhook_engine.services.engine import WebhookEngine
from webhook_engine.services.registry import RegistrationResult

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _invalid(result: RegistrationResult) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={"errors": [e.model_dump() for e in result.errors]},
    )


def _not_found(e: WebhookNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


@router.post("", response_model=WebhookCreatedResponse, status_code=201)
async def register_webhook(
    data: dict[str, Any] = Body(...),
    owner_id: str = Depends(get_owner_id),
    engine: WebhookEngine = Depends(get_engine),
) -> WebhookCreatedResponse | JSONResponse:
    """Register a webhook. The signing secret is only ever returned here."""
    result = await engine.registry.register(owner_id, data)
    if not result.success:
        return _invalid(result)
    response = WebhookCreatedResponse.from_webhook(result.webhook)
    return response.model_copy(update={"secret": result.webhook.secret})


@router.get("", response_model=list[WebhookResponse])
async def list_webhooks(
    owner_id: str | None = Query(None, max_length=128),
    active: bool | None = None,
    engine: WebhookEngine = Depends(get_engine),
) -> list[WebhookResponse]:
    webhooks = await engine.registry.list_webhooks(owner_id=owner_id, active=active)
    return [WebhookResponse.from_webhook(w) for w in webhooks]


@router.get("/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(
    webhook_id: uuid.UUID,
    engine: WebhookEngine = Depends(get_engine),
) -> WebhookResponse:
    try:
        webhook = await engine.registry.get(webhook_id)
    except WebhookNotFoundError as e:
        raise _not_found(e)
    return WebhookResponse.from_webhook(webhook)


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: uuid.UUID,
    patch: dict[str, Any] = Body(...),
    engine: WebhookEngine = Depends(get_engine),
) -> WebhookResponse | JSONResponse:
    """Partially update a webhook; bumps its config version."""
    try:
        result = await engine.registry.update(webhook_id, patch)
    except WebhookNotFoundError as e:
        raise _not_found(e)
    if not result.success:
        return _invalid(result)
    return WebhookResponse.from_webhook(result.webhook)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: uuid.UUID,
    engine: WebhookEngine = Depends(get_engine),
) -> Response:
    try:
        await engine.registry.delete(webhook_id)
    except WebhookNotFoundError as e:
        raise _not_found(e)
    return Response(status_code=204)


@router.post("/{webhook_id}/test", response_model=ConnectivityResult)
async def test_webhook(
    webhook_id: uuid.UUID,
    data: ConnectivityTestRequest | None = None,
    engine: WebhookEngine = Depends(get_engine),
) -> ConnectivityResult:
    """Send a single signed test delivery. Not retried, not logged."""
    data = data or ConnectivityTestRequest()
    try:
        return await engine.registry.test_connectivity(
            webhook_id, data.payload, event_type=data.event_type
        )
    except WebhookNotFoundError as e:
        raise _not_found(e)


@router.get("/{webhook_id}/deliveries", response_model=list[DeliveryResponse])
async def list_deliveries(
    webhook_id: uuid.UUID,
    status: DeliveryStatus | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    engine: WebhookEngine = Depends(get_engine),
) -> list[DeliveryResponse]:
    try:
        await engine.registry.get(webhook_id)
    except WebhookNotFoundError as e:
        raise _not_found(e)
    deliveries = await engine.deliveries.list_for_webhook(
        webhook_id, status=status, limit=limit, offset=offset
    )
    return [DeliveryResponse.model_validate(d) for d in deliveries]


@router.get("/{webhook_id}/analytics", response_model=DeliveryMetrics)
async def get_analytics(
    webhook_id: uuid.UUID,
    start: datetime | None = None,
    end: datetime | None = None,
    engine: WebhookEngine = Depends(get_engine),
) -> DeliveryMetrics:
    """Delivery metrics for a period (default: the last 24 hours)."""
    try:
        await engine.registry.get(webhook_id)
    except WebhookNotFoundError as e:
        raise _not_found(e)
    end = as_utc(end) or engine.clock()
    start = as_utc(start) or end - timedelta(hours=24)
    if start > end:
        raise HTTPException(status_code=422, detail="start must be before end")
    return await engine.monitoring.get_metrics(webhook_id, start, end)


@router.get("/{webhook_id}/health", response_model=WebhookHealth)
async def get_health(
    webhook_id: uuid.UUID,
    engine: WebhookEngine = Depends(get_engine),
) -> WebhookHealth:
    try:
        return await engine.monitoring.health_report(webhook_id)
    except WebhookNotFoundError as e:
        raise _not_found(e)
