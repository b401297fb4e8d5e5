"""Delivery state machine: first attempts, backoff retries and the sweep loop.

    pending -> attempting -> success | retrying | abandoned
    retrying -> attempting
    abandoned -> retrying   (manual redelivery only)

Every move goes through ``DeliveryStore.transition`` (compare-and-set on
the current status), so a delivery has at most one attempt in flight and
reaches a terminal state exactly once even with several schedulers running.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

from webhook_engine.config import settings
from webhook_engine.exceptions import (
    DeliveryNotFoundError,
    DuplicateDeliveryError,
    WebhookNotFoundError,
)
from webhook_engine.models.delivery import Delivery, DeliveryLog, DeliveryStatus
from webhook_engine.models.event import WebhookEvent
from webhook_engine.models.webhook import Webhook
from webhook_engine.schemas.monitoring import CriticalFailureSignal
from webhook_engine.services.executor import AttemptOutcome, DeliveryExecutor, OutcomeKind
from webhook_engine.services.rate_limit import RateLimitDecision
from webhook_engine.services.worker_pool import DeliveryWorkerPool
from webhook_engine.stores.base import (
    DeliveryLogStore,
    DeliveryStore,
    EventStore,
    WebhookStore,
)

logger = logging.getLogger(__name__)

AbandonedHandler = Callable[[CriticalFailureSignal], Awaitable[Any]]


class RateLimiter(Protocol):
    async def admit(self, webhook_id: uuid.UUID) -> RateLimitDecision: ...


class RetryScheduler:
    def __init__(
        self,
        webhooks: WebhookStore,
        events: EventStore,
        deliveries: DeliveryStore,
        logs: DeliveryLogStore,
        executor: DeliveryExecutor,
        rate_limiter: RateLimiter,
        on_abandoned: AbandonedHandler | None = None,
        pool: DeliveryWorkerPool | None = None,
        clock: Callable[[], datetime] | None = None,
        retry_client_errors: bool | None = None,
        rate_limit_consumes_attempt: bool | None = None,
        sweep_batch_size: int | None = None,
        sweep_interval_seconds: float | None = None,
    ) -> None:
        self._webhooks = webhooks
        self._events = events
        self._deliveries = deliveries
        self._logs = logs
        self._executor = executor
        self._rate_limiter = rate_limiter
        self._on_abandoned = on_abandoned
        self._pool = pool
        self._clock = clock or (lambda: datetime.now(UTC))
        self._retry_client_errors = (
            settings.webhook_retry_client_errors
            if retry_client_errors is None else retry_client_errors
        )
        self._rate_limit_consumes_attempt = (
            settings.webhook_rate_limit_consumes_attempt
            if rate_limit_consumes_attempt is None else rate_limit_consumes_attempt
        )
        self._sweep_batch_size = sweep_batch_size or settings.dispatch_sweep_batch_size
        self._sweep_interval = sweep_interval_seconds or settings.dispatch_sweep_interval_seconds

    # -- entry points -----------------------------------------------------

    async def schedule(self, webhook: Webhook, event: WebhookEvent) -> Delivery:
        """Create the delivery for (webhook, event) and dispatch its first attempt.

        Scheduling the same pair twice returns the existing delivery and
        starts nothing new.
        """
        now = self._clock()
        delivery = Delivery(
            delivery_id=uuid.uuid4(),
            webhook_id=webhook.webhook_id,
            event_id=event.event_id,
            event_type=event.event_type,
            status=DeliveryStatus.PENDING,
            attempt_count=0,
            max_attempts=webhook.max_retries + 1,
            request_snapshot=None,
            response_snapshot=None,
            last_status_code=None,
            last_error_kind=None,
            last_error=None,
            scheduled_at=now,
            next_retry_at=None,
            updated_at=now,
            completed_at=None,
        )
        try:
            delivery = await self._deliveries.create(delivery)
        except DuplicateDeliveryError:
            existing = await self._deliveries.get_for(webhook.webhook_id, event.event_id)
            logger.info(
                "Event %s already scheduled for webhook %s (delivery %s, %s)",
                event.event_id, webhook.webhook_id,
                existing.delivery_id if existing else None,
                existing.status.value if existing else None,
            )
            return existing

        await self._dispatch(self.process, delivery.delivery_id)
        return await self._deliveries.get(delivery.delivery_id) or delivery

    async def process(self, delivery_id: uuid.UUID) -> None:
        """Run the first attempt of a pending delivery."""
        delivery = await self._deliveries.transition(
            delivery_id,
            DeliveryStatus.PENDING,
            DeliveryStatus.ATTEMPTING,
            updated_at=self._clock(),
        )
        if delivery is None:
            logger.debug("Delivery %s is no longer pending, skipping", delivery_id)
            return
        await self._execute(delivery)

    async def sweep_once(self) -> int:
        """Claim due retries (oldest first) and dispatch them; returns how many were claimed.

        At most one batch is claimed, less whatever is still waiting on the
        worker queue, so queued first attempts are not pushed behind a retry
        backlog.
        """
        limit = self._sweep_batch_size
        if self._pool is not None:
            limit -= self._pool.backlog
        if limit <= 0:
            logger.debug("Worker queue holds a full batch, sweep skipped")
            return 0
        claimed = await self._deliveries.claim_due(self._clock(), limit)
        for delivery in claimed:
            await self._dispatch(self._execute, delivery)
        if claimed:
            logger.debug("Sweep claimed %d due deliveries", len(claimed))
        return len(claimed)

    async def run_sweeper(self) -> None:
        """Sweep until cancelled; sleeps for the interval only when a sweep comes back short."""
        logger.info("Retry sweeper started (every %.1fs)", self._sweep_interval)
        while True:
            try:
                claimed = await self.sweep_once()
                if claimed < self._sweep_batch_size:
                    await asyncio.sleep(self._sweep_interval)
                else:
                    await asyncio.sleep(0)
            except asyncio.CancelledError:
                logger.info("Retry sweeper shutting down")
                break
            except Exception:
                logger.exception("Retry sweep failed, retrying in %.1fs", self._sweep_interval)
                await asyncio.sleep(self._sweep_interval)

    async def recover(self) -> tuple[int, int]:
        """Startup recovery: orphaned attempts go back to retrying, pending ones are dispatched.

        Returns (orphaned_attempts_released, pending_redispatched).
        """
        now = self._clock()
        released = 0
        for delivery in await self._deliveries.list_by_status([DeliveryStatus.ATTEMPTING]):
            moved = await self._deliveries.transition(
                delivery.delivery_id,
                DeliveryStatus.ATTEMPTING,
                DeliveryStatus.RETRYING,
                next_retry_at=now,
                updated_at=now,
            )
            if moved is not None:
                released += 1

        pending = await self._deliveries.list_by_status([DeliveryStatus.PENDING])
        for delivery in pending:
            await self._dispatch(self.process, delivery.delivery_id)

        if released or pending:
            logger.info(
                "Delivery recovery: %d orphaned attempts released, %d pending re-dispatched",
                released, len(pending),
            )
        return released, len(pending)

    async def redeliver(self, delivery_id: uuid.UUID) -> Delivery | None:
        """Put an abandoned delivery back on the retry queue, due now.

        The delivery gets a fresh budget of max_retries + 1 attempts on top of
        the ones already made; attempt numbers carry on from attempt_count.
        Returns None if the delivery is not abandoned.
        """
        delivery = await self._deliveries.get(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        webhook = await self._webhooks.get(delivery.webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(delivery.webhook_id)

        now = self._clock()
        requeued = await self._deliveries.transition(
            delivery_id,
            DeliveryStatus.ABANDONED,
            DeliveryStatus.RETRYING,
            max_attempts=delivery.attempt_count + webhook.max_retries + 1,
            next_retry_at=now,
            completed_at=None,
            updated_at=now,
        )
        if requeued is None:
            logger.info(
                "Delivery %s is %s, not redelivering", delivery_id, delivery.status.value
            )
            return None
        logger.info(
            "Delivery %s re-queued, resuming at attempt %d",
            delivery_id, requeued.attempt_count + 1,
        )
        return requeued

    async def redeliver_recent(
        self, webhook_id: uuid.UUID, max_age: timedelta, limit: int = 500
    ) -> list[Delivery]:
        """Redeliver a webhook's abandoned deliveries scheduled within max_age."""
        if await self._webhooks.get(webhook_id) is None:
            raise WebhookNotFoundError(webhook_id)
        abandoned = await self._deliveries.list_for_webhook(
            webhook_id,
            status=DeliveryStatus.ABANDONED,
            limit=limit,
            since=self._clock() - max_age,
        )
        requeued = []
        for delivery in abandoned:
            moved = await self.redeliver(delivery.delivery_id)
            if moved is not None:
                requeued.append(moved)
        return requeued

    # -- internals --------------------------------------------------------

    async def _dispatch(self, job: Callable[[Any], Awaitable[None]], arg: Any) -> None:
        if self._pool is None:
            await job(arg)
            return
        label = str(arg.delivery_id if isinstance(arg, Delivery) else arg)
        self._pool.submit(lambda: job(arg), label=label)

    async def _execute(self, delivery: Delivery) -> None:
        """Run attempt number attempt_count + 1 of a delivery this scheduler owns (attempting)."""
        attempt_number = delivery.attempt_count + 1

        webhook = await self._webhooks.get(delivery.webhook_id)
        event = await self._events.get(delivery.event_id)
        if webhook is None or event is None:
            reason = "webhook deleted" if webhook is None else "event missing"
            await self._deliveries.transition(
                delivery.delivery_id,
                DeliveryStatus.ATTEMPTING,
                DeliveryStatus.ABANDONED,
                last_error_kind="unavailable",
                last_error=reason,
                completed_at=self._clock(),
                updated_at=self._clock(),
            )
            logger.warning("Abandoned delivery %s: %s", delivery.delivery_id, reason)
            return

        try:
            decision = await self._rate_limiter.admit(webhook.webhook_id)
        except asyncio.CancelledError:
            await self._release(delivery)
            raise
        except Exception:
            logger.exception("Rate limiter unavailable for webhook %s", webhook.webhook_id)
            await self._release(
                delivery, self._clock() + timedelta(seconds=self._sweep_interval)
            )
            return

        try:
            if not decision.allowed:
                if not self._rate_limit_consumes_attempt:
                    await self._defer(delivery, webhook, decision)
                    return
                outcome = AttemptOutcome(
                    kind=OutcomeKind.RETRYABLE,
                    request_url=webhook.url,
                    request_headers={},
                    request_body="",
                    response_time_ms=0.0,
                    error_kind="rate_limited",
                    error=_rate_limit_message(decision),
                    attempted_at=self._clock(),
                )
            else:
                outcome = await self._executor.attempt(
                    webhook, event, attempt_number, delivery.delivery_id
                )
        except asyncio.CancelledError:
            await self._release(delivery)
            raise
        except Exception as e:
            logger.exception(
                "Attempt %d of delivery %s failed unexpectedly",
                attempt_number, delivery.delivery_id,
            )
            outcome = AttemptOutcome(
                kind=OutcomeKind.RETRYABLE,
                request_url=webhook.url,
                request_headers={},
                request_body="",
                response_time_ms=0.0,
                error_kind="internal",
                error=f"Internal error: {e!r}",
                attempted_at=self._clock(),
            )

        await self._settle(delivery, webhook, attempt_number, outcome)

    async def _defer(
        self, delivery: Delivery, webhook: Webhook, decision: RateLimitDecision
    ) -> None:
        """Rate-limited: back to retrying until the window resets, no attempt used."""
        await self._deliveries.transition(
            delivery.delivery_id,
            DeliveryStatus.ATTEMPTING,
            DeliveryStatus.RETRYING,
            next_retry_at=decision.reset_at,
            last_error_kind="rate_limited",
            last_error=_rate_limit_message(decision),
            updated_at=self._clock(),
        )
        logger.info(
            "Delivery %s deferred until %s by rate limit",
            delivery.delivery_id, decision.reset_at.isoformat(),
            extra={
                "webhook_id": str(webhook.webhook_id),
                "event_id": str(delivery.event_id),
                "attempt": delivery.attempt_count + 1,
                "status_code": None,
                "duration": None,
                "error": "rate_limited",
            },
        )

    async def _release(self, delivery: Delivery, retry_at: datetime | None = None) -> None:
        """Hand an unfinished attempt back to the sweeper without counting it."""
        now = self._clock()
        await self._deliveries.transition(
            delivery.delivery_id,
            DeliveryStatus.ATTEMPTING,
            DeliveryStatus.RETRYING,
            next_retry_at=retry_at or now,
            updated_at=now,
        )
        logger.info("Delivery %s released uncounted", delivery.delivery_id)

    async def _settle(
        self,
        delivery: Delivery,
        webhook: Webhook,
        attempt_number: int,
        outcome: AttemptOutcome,
    ) -> None:
        now = self._clock()
        retry_delay_ms = None
        if outcome.kind == OutcomeKind.SUCCESS:
            new_status = DeliveryStatus.SUCCESS
        elif outcome.kind == OutcomeKind.CLIENT_ERROR and not self._retry_client_errors:
            new_status = DeliveryStatus.ABANDONED
        elif attempt_number >= delivery.max_attempts:
            new_status = DeliveryStatus.ABANDONED
        else:
            new_status = DeliveryStatus.RETRYING
            retry_delay_ms = webhook.backoff_delay_ms(attempt_number)

        changes: dict[str, Any] = {
            "attempt_count": attempt_number,
            "request_snapshot": outcome.request_snapshot(),
            "response_snapshot": outcome.response_snapshot(),
            "last_status_code": outcome.status_code,
            "last_error_kind": outcome.error_kind,
            "last_error": outcome.error,
            "updated_at": now,
        }
        if new_status == DeliveryStatus.RETRYING:
            changes["next_retry_at"] = now + timedelta(milliseconds=retry_delay_ms)
        else:
            changes["next_retry_at"] = None
            changes["completed_at"] = now

        updated = await self._deliveries.transition(
            delivery.delivery_id, DeliveryStatus.ATTEMPTING, new_status, **changes
        )
        if updated is None:
            logger.warning(
                "Delivery %s left attempting while attempt %d ran; result dropped",
                delivery.delivery_id, attempt_number,
            )
            return

        await self._record_log(delivery, attempt_number, outcome, new_status, retry_delay_ms)

        fields = {
            "webhook_id": str(webhook.webhook_id),
            "event_id": str(delivery.event_id),
            "attempt": attempt_number,
            "status_code": outcome.status_code,
            "duration": outcome.response_time_ms,
            "error": outcome.error,
        }
        if new_status == DeliveryStatus.SUCCESS:
            logger.info("Delivery %s succeeded", delivery.delivery_id, extra=fields)
        elif new_status == DeliveryStatus.RETRYING:
            logger.warning(
                "Delivery %s failed, retrying in %dms",
                delivery.delivery_id, retry_delay_ms, extra=fields,
            )
        else:
            logger.error(
                "Delivery %s abandoned after %d attempts",
                delivery.delivery_id, attempt_number, extra=fields,
            )
            await self._signal_abandoned(updated, outcome, now)

    async def _record_log(
        self,
        delivery: Delivery,
        attempt_number: int,
        outcome: AttemptOutcome,
        resulting_status: DeliveryStatus,
        retry_delay_ms: int | None,
    ) -> None:
        log = DeliveryLog(
            log_id=uuid.uuid4(),
            delivery_id=delivery.delivery_id,
            webhook_id=delivery.webhook_id,
            event_id=delivery.event_id,
            event_type=delivery.event_type,
            attempt_number=attempt_number,
            attempted_at=outcome.attempted_at,
            request_url=outcome.request_url,
            request_method="POST",
            request_headers=outcome.request_headers,
            request_body=outcome.request_body,
            response_status_code=outcome.status_code,
            response_headers=outcome.response_headers,
            response_body=outcome.response_body,
            response_time_ms=outcome.response_time_ms,
            success=outcome.succeeded,
            error_kind=outcome.error_kind,
            error_message=outcome.error,
            resulting_status=resulting_status.value,
            retry_delay_ms=retry_delay_ms,
        )
        try:
            await self._logs.record(log)
        except Exception:
            logger.exception(
                "Failed to record delivery log for %s attempt %d",
                delivery.delivery_id, attempt_number,
            )

    async def _signal_abandoned(
        self, delivery: Delivery, outcome: AttemptOutcome, now: datetime
    ) -> None:
        if self._on_abandoned is None:
            return
        signal = CriticalFailureSignal(
            webhook_id=delivery.webhook_id,
            delivery_id=delivery.delivery_id,
            event_id=delivery.event_id,
            attempts=delivery.attempt_count,
            error_kind=outcome.error_kind,
            error=outcome.error,
            occurred_at=now,
        )
        try:
            await self._on_abandoned(signal)
        except Exception:
            logger.exception("Critical failure handler failed for delivery %s", delivery.delivery_id)


def _rate_limit_message(decision: RateLimitDecision) -> str:
    return (
        f"Rate limit exceeded ({decision.current}/{decision.limit} per {decision.window}), "
        f"resets at {decision.reset_at.isoformat()}"
    )
