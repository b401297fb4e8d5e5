"""In-memory stores (single process; swap for the SQL stores in production).

All mutations happen without awaiting in between, so on one event loop each
method is atomic; that is what makes ``transition`` a real compare-and-set.
"""

import uuid
from collections import Counter
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from webhook_engine.exceptions import DuplicateDeliveryError
from webhook_engine.models.delivery import (
    TERMINAL_STATUSES,
    Delivery,
    DeliveryLog,
    DeliveryStatus,
)
from webhook_engine.models.event import WebhookEvent
from webhook_engine.models.webhook import Webhook
from webhook_engine.schemas.delivery import DeliveryLogFilter


class InMemoryWebhookStore:
    def __init__(self) -> None:
        self._webhooks: dict[uuid.UUID, Webhook] = {}

    async def add(self, webhook: Webhook) -> Webhook:
        self._webhooks[webhook.webhook_id] = webhook
        return webhook

    async def get(self, webhook_id: uuid.UUID) -> Webhook | None:
        return self._webhooks.get(webhook_id)

    async def save(self, webhook: Webhook) -> Webhook:
        self._webhooks[webhook.webhook_id] = webhook
        return webhook

    async def delete(self, webhook_id: uuid.UUID) -> bool:
        return self._webhooks.pop(webhook_id, None) is not None

    async def find(self, owner_id: str | None = None, active: bool | None = None) -> list[Webhook]:
        webhooks = [
            w for w in self._webhooks.values()
            if (owner_id is None or w.owner_id == owner_id)
            and (active is None or w.is_active == active)
        ]
        return sorted(webhooks, key=lambda w: w.created_at)

    async def mark_triggered(self, webhook_id: uuid.UUID, at: datetime) -> None:
        webhook = self._webhooks.get(webhook_id)
        if webhook is not None:
            webhook.last_triggered_at = at


class InMemoryEventStore:
    def __init__(self) -> None:
        self._events: dict[uuid.UUID, WebhookEvent] = {}

    async def add(self, event: WebhookEvent) -> WebhookEvent:
        # Re-publishing an existing event_id keeps the original record
        return self._events.setdefault(event.event_id, event)

    async def get(self, event_id: uuid.UUID) -> WebhookEvent | None:
        return self._events.get(event_id)


class InMemoryDeliveryStore:
    def __init__(self) -> None:
        self._deliveries: dict[uuid.UUID, Delivery] = {}
        self._by_key: dict[tuple[uuid.UUID, uuid.UUID], uuid.UUID] = {}

    async def create(self, delivery: Delivery) -> Delivery:
        key = (delivery.webhook_id, delivery.event_id)
        if key in self._by_key:
            raise DuplicateDeliveryError(delivery.webhook_id, delivery.event_id)
        self._by_key[key] = delivery.delivery_id
        self._deliveries[delivery.delivery_id] = delivery
        return delivery

    async def get(self, delivery_id: uuid.UUID) -> Delivery | None:
        return self._deliveries.get(delivery_id)

    async def get_for(self, webhook_id: uuid.UUID, event_id: uuid.UUID) -> Delivery | None:
        delivery_id = self._by_key.get((webhook_id, event_id))
        return self._deliveries.get(delivery_id) if delivery_id else None

    async def transition(
        self,
        delivery_id: uuid.UUID,
        expected: DeliveryStatus,
        new: DeliveryStatus,
        **changes: Any,
    ) -> Delivery | None:
        delivery = self._deliveries.get(delivery_id)
        if delivery is None or delivery.status != expected:
            return None
        delivery.status = new
        for field, value in changes.items():
            setattr(delivery, field, value)
        delivery.updated_at = changes.get("updated_at", datetime.now(UTC))
        return delivery

    async def claim_due(self, now: datetime, limit: int) -> list[Delivery]:
        due = sorted(
            (
                d for d in self._deliveries.values()
                if d.status == DeliveryStatus.RETRYING
                and d.next_retry_at is not None
                and d.next_retry_at <= now
            ),
            key=lambda d: d.next_retry_at,
        )[:limit]
        for delivery in due:
            delivery.status = DeliveryStatus.ATTEMPTING
            delivery.next_retry_at = None
            delivery.updated_at = now
        return due

    async def list_by_status(self, statuses: Iterable[DeliveryStatus]) -> list[Delivery]:
        wanted = set(statuses)
        return [d for d in self._deliveries.values() if d.status in wanted]

    async def list_for_webhook(
        self,
        webhook_id: uuid.UUID,
        status: DeliveryStatus | None = None,
        limit: int = 100,
        offset: int = 0,
        since: datetime | None = None,
    ) -> list[Delivery]:
        deliveries = sorted(
            (
                d for d in self._deliveries.values()
                if d.webhook_id == webhook_id
                and (status is None or d.status == status)
                and (since is None or d.scheduled_at >= since)
            ),
            key=lambda d: d.scheduled_at,
            reverse=True,
        )
        return deliveries[offset:offset + limit]

    async def count_by_status(
        self, webhook_id: uuid.UUID, start: datetime, end: datetime
    ) -> dict[DeliveryStatus, int]:
        return dict(Counter(
            d.status for d in self._deliveries.values()
            if d.webhook_id == webhook_id and start <= d.scheduled_at <= end
        ))

    async def recent_terminal(self, webhook_id: uuid.UUID, limit: int) -> list[Delivery]:
        terminal = sorted(
            (
                d for d in self._deliveries.values()
                if d.webhook_id == webhook_id
                and d.status in TERMINAL_STATUSES
                and d.completed_at is not None
            ),
            key=lambda d: d.completed_at,
            reverse=True,
        )
        return terminal[:limit]


class InMemoryDeliveryLogStore:
    def __init__(self) -> None:
        self._logs: list[DeliveryLog] = []
        self._keys: set[tuple[uuid.UUID, int]] = set()

    async def record(self, log: DeliveryLog) -> None:
        key = (log.delivery_id, log.attempt_number)
        if key in self._keys:
            return
        self._keys.add(key)
        self._logs.append(log)

    async def query(self, filters: DeliveryLogFilter) -> list[DeliveryLog]:
        matched = [log for log in self._logs if _matches(log, filters)]
        matched.sort(key=lambda log: (log.attempted_at, log.attempt_number), reverse=True)
        return matched[filters.offset:filters.offset + filters.limit]

    async def window(
        self, webhook_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[DeliveryLog]:
        return [
            log for log in self._logs
            if log.webhook_id == webhook_id and start <= log.attempted_at <= end
        ]


def _matches(log: DeliveryLog, f: DeliveryLogFilter) -> bool:
    if f.webhook_id is not None and log.webhook_id != f.webhook_id:
        return False
    if f.delivery_id is not None and log.delivery_id != f.delivery_id:
        return False
    if f.success is not None and log.success != f.success:
        return False
    if f.resulting_status is not None and log.resulting_status != f.resulting_status:
        return False
    if f.error_kind is not None and log.error_kind != f.error_kind:
        return False
    if f.start is not None and log.attempted_at < f.start:
        return False
    if f.end is not None and log.attempted_at > f.end:
        return False
    return True
