"""Inbound side of the engine: turns a published event into scheduled deliveries."""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from webhook_engine.exceptions import EventValidationError
from webhook_engine.models.delivery import Delivery
from webhook_engine.models.event import KNOWN_EVENT_TYPES, WebhookEvent
from webhook_engine.models.webhook import Webhook
from webhook_engine.services.matcher import EventMatcher, Predicate
from webhook_engine.services.scheduler import RetryScheduler
from webhook_engine.stores.base import EventStore, WebhookStore

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    event: WebhookEvent
    matched: list[Webhook] = field(default_factory=list)
    deliveries: list[Delivery] = field(default_factory=list)


class WebhookDispatcher:
    def __init__(
        self,
        webhooks: WebhookStore,
        events: EventStore,
        matcher: EventMatcher,
        scheduler: RetryScheduler,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._webhooks = webhooks
        self._events = events
        self._matcher = matcher
        self._scheduler = scheduler
        self._clock = clock or (lambda: datetime.now(UTC))

    async def publish_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        event_id: uuid.UUID | None = None,
        owner_id: str | None = None,
    ) -> WebhookEvent:
        result = await self.publish(event_type, payload, event_id=event_id, owner_id=owner_id)
        return result.event

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        event_id: uuid.UUID | None = None,
        owner_id: str | None = None,
        predicate: Predicate | None = None,
    ) -> PublishResult:
        """Store the event and schedule one delivery per matching webhook.

        When owner_id is given only that owner's webhooks are considered.
        A failure scheduling one webhook is logged and does not affect the others.
        """
        if event_type not in KNOWN_EVENT_TYPES:
            raise EventValidationError(f"Unknown event type: {event_type}")
        if not isinstance(payload, dict):
            raise EventValidationError("Event payload must be a JSON object")

        event = await self._events.add(WebhookEvent(
            event_id=event_id or uuid.uuid4(),
            event_type=event_type,
            payload=payload,
            owner_id=owner_id,
            created_at=self._clock(),
        ))

        def accepts(webhook: Webhook, data: dict[str, Any]) -> bool:
            if owner_id is not None and webhook.owner_id != owner_id:
                return False
            return predicate is None or predicate(webhook, data)

        matched = await self._matcher.match(event.event_type, event.payload, accepts)
        result = PublishResult(event=event, matched=matched)

        for webhook in matched:
            try:
                delivery = await self._scheduler.schedule(webhook, event)
                result.deliveries.append(delivery)
                await self._webhooks.mark_triggered(webhook.webhook_id, event.created_at)
            except Exception:
                logger.exception(
                    "Failed to schedule event %s for webhook %s",
                    event.event_id, webhook.webhook_id,
                )

        logger.info(
            "Published %s event %s to %d webhook(s)",
            event.event_type, event.event_id, len(result.deliveries),
        )
        return result
