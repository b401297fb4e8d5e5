"""Storage interfaces injected into every engine component.

Two implementations ship: in-process dictionaries (dev/tests) and
SQLAlchemy async sessions (production). Status changes on deliveries go
through ``transition``, a compare-and-set on the current status, which is
the only way to move a delivery between states.
"""

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from webhook_engine.models.delivery import Delivery, DeliveryLog, DeliveryStatus
from webhook_engine.models.event import WebhookEvent
from webhook_engine.models.webhook import Webhook
from webhook_engine.schemas.delivery import DeliveryLogFilter


class WebhookStore(Protocol):
    async def add(self, webhook: Webhook) -> Webhook: ...
    async def get(self, webhook_id: uuid.UUID) -> Webhook | None: ...
    async def save(self, webhook: Webhook) -> Webhook: ...
    async def delete(self, webhook_id: uuid.UUID) -> bool: ...
    async def find(self, owner_id: str | None = None, active: bool | None = None) -> list[Webhook]: ...
    async def mark_triggered(self, webhook_id: uuid.UUID, at: datetime) -> None: ...


class EventStore(Protocol):
    async def add(self, event: WebhookEvent) -> WebhookEvent: ...
    async def get(self, event_id: uuid.UUID) -> WebhookEvent | None: ...


class DeliveryStore(Protocol):
    async def create(self, delivery: Delivery) -> Delivery:
        """Insert a delivery; raises DuplicateDeliveryError for an existing (webhook_id, event_id)."""
        ...

    async def get(self, delivery_id: uuid.UUID) -> Delivery | None: ...
    async def get_for(self, webhook_id: uuid.UUID, event_id: uuid.UUID) -> Delivery | None: ...

    async def transition(
        self,
        delivery_id: uuid.UUID,
        expected: DeliveryStatus,
        new: DeliveryStatus,
        **changes: Any,
    ) -> Delivery | None:
        """Move a delivery from expected to new; returns None if it was not in expected."""
        ...

    async def claim_due(self, now: datetime, limit: int) -> list[Delivery]:
        """Claim retrying deliveries due at now (oldest first) by moving them to attempting."""
        ...

    async def list_by_status(self, statuses: Iterable[DeliveryStatus]) -> list[Delivery]: ...

    async def list_for_webhook(
        self,
        webhook_id: uuid.UUID,
        status: DeliveryStatus | None = None,
        limit: int = 100,
        offset: int = 0,
        since: datetime | None = None,
    ) -> list[Delivery]:
        """Newest first; ``since`` keeps deliveries scheduled at or after it."""
        ...

    async def count_by_status(
        self, webhook_id: uuid.UUID, start: datetime, end: datetime
    ) -> dict[DeliveryStatus, int]:
        """Deliveries scheduled within [start, end], counted per current status."""
        ...

    async def recent_terminal(self, webhook_id: uuid.UUID, limit: int) -> list[Delivery]:
        """Most recently completed terminal deliveries, newest first."""
        ...


class DeliveryLogStore(Protocol):
    async def record(self, log: DeliveryLog) -> None: ...
    async def query(self, filters: DeliveryLogFilter) -> list[DeliveryLog]: ...
    async def window(
        self, webhook_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[DeliveryLog]: ...
