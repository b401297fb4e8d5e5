"""Delivery and delivery-log query endpoints."""

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from webhook_engine.deps import as_utc, get_engine
from webhook_engine.exceptions import DeliveryNotFoundError, WebhookNotFoundError
from webhook_engine.models.delivery import Delivery
from webhook_engine.schemas.delivery import (
    DeliveryLogFilter,
    DeliveryLogResponse,
    DeliveryResponse,
    RedeliveryRequest,
    RedeliveryResult,
)
from webhook_engine.services.engine import WebhookEngine

router = APIRouter(prefix="/deliveries", tags=["deliveries"])


async def _get_delivery(engine: WebhookEngine, delivery_id: uuid.UUID) -> Delivery:
    delivery = await engine.deliveries.get(delivery_id)
    if delivery is None:
        raise DeliveryNotFoundError(delivery_id)
    return delivery


# Registered before /{delivery_id} so "logs" is not parsed as an id
@router.get("/logs", response_model=list[DeliveryLogResponse])
async def query_logs(
    webhook_id: uuid.UUID | None = None,
    delivery_id: uuid.UUID | None = None,
    success: bool | None = None,
    resulting_status: str | None = None,
    error_kind: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: WebhookEngine = Depends(get_engine),
) -> list[DeliveryLogResponse]:
    """Search the delivery log, newest attempts first."""
    filters = DeliveryLogFilter(
        webhook_id=webhook_id,
        delivery_id=delivery_id,
        success=success,
        resulting_status=resulting_status,
        error_kind=error_kind,
        start=as_utc(start),
        end=as_utc(end),
        limit=limit,
        offset=offset,
    )
    logs = await engine.logs.query(filters)
    return [DeliveryLogResponse.model_validate(log) for log in logs]


@router.get("/{delivery_id}", response_model=DeliveryResponse)
async def get_delivery(
    delivery_id: uuid.UUID,
    engine: WebhookEngine = Depends(get_engine),
) -> DeliveryResponse:
    try:
        delivery = await _get_delivery(engine, delivery_id)
    except DeliveryNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return DeliveryResponse.model_validate(delivery)


@router.get("/{delivery_id}/logs", response_model=list[DeliveryLogResponse])
async def get_delivery_logs(
    delivery_id: uuid.UUID,
    engine: WebhookEngine = Depends(get_engine),
) -> list[DeliveryLogResponse]:
    """Every attempt of one delivery, newest first."""
    try:
        await _get_delivery(engine, delivery_id)
    except DeliveryNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    logs = await engine.logs.query(DeliveryLogFilter(delivery_id=delivery_id, limit=1000))
    return [DeliveryLogResponse.model_validate(log) for log in logs]


@router.post("/retry", response_model=RedeliveryResult)
async def retry_deliveries(
    data: RedeliveryRequest,
    engine: WebhookEngine = Depends(get_engine),
) -> RedeliveryResult:
    """Re-queue abandoned deliveries for another round of attempts.

    By id: every id must exist, and ids that are not abandoned are skipped.
    By webhook: every abandoned delivery scheduled within max_age_hours.
    """
    try:
        if data.delivery_ids is not None:
            for delivery_id in data.delivery_ids:
                await _get_delivery(engine, delivery_id)
            requeued: list[uuid.UUID] = []
            skipped: list[uuid.UUID] = []
            for delivery_id in dict.fromkeys(data.delivery_ids):
                if await engine.scheduler.redeliver(delivery_id) is not None:
                    requeued.append(delivery_id)
                else:
                    skipped.append(delivery_id)
            return RedeliveryResult(requeued=requeued, skipped=skipped)

        moved = await engine.scheduler.redeliver_recent(data.webhook_id, data.max_age)
    except (DeliveryNotFoundError, WebhookNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    return RedeliveryResult(requeued=[d.delivery_id for d in moved])
