"""SQLAlchemy-backed stores.

Each call opens its own short-lived session; objects are returned detached
(``expire_on_commit=False``). Delivery transitions are conditional UPDATEs
on the current status, so concurrent schedulers cannot double-claim.
"""

import logging
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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

logger = logging.getLogger(__name__)


class SqlWebhookStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, webhook: Webhook) -> Webhook:
        async with self._session_factory() as db:
            db.add(webhook)
            await db.commit()
            await db.refresh(webhook)
        return webhook

    async def get(self, webhook_id: uuid.UUID) -> Webhook | None:
        async with self._session_factory() as db:
            result = await db.execute(select(Webhook).where(Webhook.webhook_id == webhook_id))
            return result.scalar_one_or_none()

    async def save(self, webhook: Webhook) -> Webhook:
        async with self._session_factory() as db:
            merged = await db.merge(webhook)
            await db.commit()
            await db.refresh(merged)
        return merged

    async def delete(self, webhook_id: uuid.UUID) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(delete(Webhook).where(Webhook.webhook_id == webhook_id))
            await db.commit()
        return result.rowcount > 0

    async def find(self, owner_id: str | None = None, active: bool | None = None) -> list[Webhook]:
        query = select(Webhook).order_by(Webhook.created_at)
        if owner_id is not None:
            query = query.where(Webhook.owner_id == owner_id)
        if active is not None:
            query = query.where(Webhook.is_active == active)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def mark_triggered(self, webhook_id: uuid.UUID, at: datetime) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(Webhook)
                .where(Webhook.webhook_id == webhook_id)
                .values(last_triggered_at=at)
            )
            await db.commit()


class SqlEventStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def add(self, event: WebhookEvent) -> WebhookEvent:
        async with self._session_factory() as db:
            db.add(event)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                result = await db.execute(
                    select(WebhookEvent).where(WebhookEvent.event_id == event.event_id)
                )
                return result.scalar_one()
        return event

    async def get(self, event_id: uuid.UUID) -> WebhookEvent | None:
        async with self._session_factory() as db:
            result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
            return result.scalar_one_or_none()


class SqlDeliveryStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create(self, delivery: Delivery) -> Delivery:
        async with self._session_factory() as db:
            db.add(delivery)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise DuplicateDeliveryError(delivery.webhook_id, delivery.event_id)
        return delivery

    async def get(self, delivery_id: uuid.UUID) -> Delivery | None:
        async with self._session_factory() as db:
            result = await db.execute(select(Delivery).where(Delivery.delivery_id == delivery_id))
            return result.scalar_one_or_none()

    async def get_for(self, webhook_id: uuid.UUID, event_id: uuid.UUID) -> Delivery | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Delivery).where(
                    Delivery.webhook_id == webhook_id,
                    Delivery.event_id == event_id,
                )
            )
            return result.scalar_one_or_none()

    async def transition(
        self,
        delivery_id: uuid.UUID,
        expected: DeliveryStatus,
        new: DeliveryStatus,
        **changes: Any,
    ) -> Delivery | None:
        changes.setdefault("updated_at", datetime.now(UTC))
        async with self._session_factory() as db:
            result = await db.execute(
                update(Delivery)
                .where(Delivery.delivery_id == delivery_id, Delivery.status == expected)
                .values(status=new, **changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return None
            await db.commit()
            fetched = await db.execute(select(Delivery).where(Delivery.delivery_id == delivery_id))
            return fetched.scalar_one()

    async def claim_due(self, now: datetime, limit: int) -> list[Delivery]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Delivery.delivery_id)
                .where(
                    Delivery.status == DeliveryStatus.RETRYING,
                    Delivery.next_retry_at <= now,
                )
                .order_by(Delivery.next_retry_at)
                .limit(limit)
            )
            candidate_ids = list(result.scalars().all())

        claimed = []
        for delivery_id in candidate_ids:
            delivery = await self.transition(
                delivery_id,
                DeliveryStatus.RETRYING,
                DeliveryStatus.ATTEMPTING,
                next_retry_at=None,
                updated_at=now,
            )
            if delivery is None:
                logger.debug("Delivery %s claimed by another scheduler", delivery_id)
                continue
            claimed.append(delivery)
        return claimed

    async def list_by_status(self, statuses: Iterable[DeliveryStatus]) -> list[Delivery]:
        async with self._session_factory() as db:
            result = await db.execute(select(Delivery).where(Delivery.status.in_(list(statuses))))
            return list(result.scalars().all())

    async def list_for_webhook(
        self,
        webhook_id: uuid.UUID,
        status: DeliveryStatus | None = None,
        limit: int = 100,
        offset: int = 0,
        since: datetime | None = None,
    ) -> list[Delivery]:
        query = (
            select(Delivery)
            .where(Delivery.webhook_id == webhook_id)
            .order_by(Delivery.scheduled_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if status is not None:
            query = query.where(Delivery.status == status)
        if since is not None:
            query = query.where(Delivery.scheduled_at >= since)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def count_by_status(
        self, webhook_id: uuid.UUID, start: datetime, end: datetime
    ) -> dict[DeliveryStatus, int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Delivery.status, func.count())
                .where(
                    Delivery.webhook_id == webhook_id,
                    Delivery.scheduled_at >= start,
                    Delivery.scheduled_at <= end,
                )
                .group_by(Delivery.status)
            )
            return {status: count for status, count in result.all()}

    async def recent_terminal(self, webhook_id: uuid.UUID, limit: int) -> list[Delivery]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Delivery)
                .where(
                    Delivery.webhook_id == webhook_id,
                    Delivery.status.in_(list(TERMINAL_STATUSES)),
                    Delivery.completed_at.isnot(None),
                )
                .order_by(Delivery.completed_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())


class SqlDeliveryLogStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, log: DeliveryLog) -> None:
        async with self._session_factory() as db:
            db.add(log)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.warning(
                    "Delivery log for %s attempt %d already recorded",
                    log.delivery_id, log.attempt_number,
                )

    async def query(self, filters: DeliveryLogFilter) -> list[DeliveryLog]:
        query = select(DeliveryLog)
        if filters.webhook_id is not None:
            query = query.where(DeliveryLog.webhook_id == filters.webhook_id)
        if filters.delivery_id is not None:
            query = query.where(DeliveryLog.delivery_id == filters.delivery_id)
        if filters.success is not None:
            query = query.where(DeliveryLog.success == filters.success)
        if filters.resulting_status is not None:
            query = query.where(DeliveryLog.resulting_status == filters.resulting_status)
        if filters.error_kind is not None:
            query = query.where(DeliveryLog.error_kind == filters.error_kind)
        if filters.start is not None:
            query = query.where(DeliveryLog.attempted_at >= filters.start)
        if filters.end is not None:
            query = query.where(DeliveryLog.attempted_at <= filters.end)
        query = (
            query.order_by(DeliveryLog.attempted_at.desc(), DeliveryLog.attempt_number.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def window(
        self, webhook_id: uuid.UUID, start: datetime, end: datetime
    ) -> list[DeliveryLog]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(DeliveryLog).where(
                    DeliveryLog.webhook_id == webhook_id,
                    DeliveryLog.attempted_at >= start,
                    DeliveryLog.attempted_at <= end,
                )
            )
            return list(result.scalars().all())
