"""Event intake endpoint."""

from fastapi import APIRouter, Depends, HTTPException

from webhook_engine.deps import get_engine
from webhook_engine.exceptions import EventValidationError
from webhook_engine.schemas.delivery import EventAccepted, EventPublish
from webhook_engine.services.engine import WebhookEngine

router = APIRouter(prefix="/events", tags=["events"])


@router.post("", response_model=EventAccepted, status_code=202)
async def publish_event(
    data: EventPublish,
    engine: WebhookEngine = Depends(get_engine),
) -> EventAccepted:
    """Accept an event for delivery. Returns before any delivery completes."""
    try:
        result = await engine.dispatcher.publish(
            data.event_type, data.payload, event_id=data.event_id, owner_id=data.owner_id
        )
    except EventValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return EventAccepted(
        event_id=result.event.event_id,
        event_type=result.event.event_type,
        matched_webhooks=len(result.matched),
    )
