"""Composition root: wires stores, services and background tasks together."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from webhook_engine.config import Settings, settings as default_settings
from webhook_engine.database import create_tables, make_engine, make_session_factory
from webhook_engine.redis import make_redis
from webhook_engine.services.dispatcher import WebhookDispatcher
from webhook_engine.services.executor import DeliveryExecutor
from webhook_engine.services.matcher import EventMatcher
from webhook_engine.services.monitoring import MonitoringService
from webhook_engine.services.rate_limit import InMemoryRateLimiter, RedisRateLimiter
from webhook_engine.services.registry import WebhookRegistry
from webhook_engine.services.scheduler import RateLimiter, RetryScheduler
from webhook_engine.services.worker_pool import DeliveryWorkerPool
from webhook_engine.stores.base import (
    DeliveryLogStore,
    DeliveryStore,
    EventStore,
    WebhookStore,
)
from webhook_engine.stores.memory import (
    InMemoryDeliveryLogStore,
    InMemoryDeliveryStore,
    InMemoryEventStore,
    InMemoryWebhookStore,
)
from webhook_engine.stores.sql import (
    SqlDeliveryLogStore,
    SqlDeliveryStore,
    SqlEventStore,
    SqlWebhookStore,
)

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[Any]]


class WebhookEngine:
    """Owns every component; nothing here is a process-wide singleton.

    With ``worker_count=0`` deliveries run inline on the caller's task
    instead of on the worker pool, which keeps tests deterministic.
    """

    def __init__(
        self,
        webhooks: WebhookStore,
        events: EventStore,
        deliveries: DeliveryStore,
        logs: DeliveryLogStore,
        rate_limiter: RateLimiter | None = None,
        executor: DeliveryExecutor | None = None,
        clock: Callable[[], datetime] | None = None,
        worker_count: int | None = None,
        config: Settings | None = None,
        **scheduler_options: Any,
    ) -> None:
        self.config = config or default_settings
        self.clock = clock or (lambda: datetime.now(UTC))
        self.webhooks = webhooks
        self.events = events
        self.deliveries = deliveries
        self.logs = logs

        workers = self.config.dispatch_worker_count if worker_count is None else worker_count
        self.pool = DeliveryWorkerPool(workers) if workers > 0 else None

        self.executor = executor or DeliveryExecutor(clock=self.clock)
        self.rate_limiter = rate_limiter or InMemoryRateLimiter(webhooks, clock=self.clock)
        self.monitoring = MonitoringService(webhooks, deliveries, logs, clock=self.clock)
        scheduler_options.setdefault("retry_client_errors", self.config.webhook_retry_client_errors)
        scheduler_options.setdefault(
            "rate_limit_consumes_attempt", self.config.webhook_rate_limit_consumes_attempt
        )
        scheduler_options.setdefault("sweep_batch_size", self.config.dispatch_sweep_batch_size)
        scheduler_options.setdefault(
            "sweep_interval_seconds", self.config.dispatch_sweep_interval_seconds
        )
        self.scheduler = RetryScheduler(
            webhooks,
            events,
            deliveries,
            logs,
            self.executor,
            self.rate_limiter,
            on_abandoned=self.monitoring.handle_critical_failure,
            pool=self.pool,
            clock=self.clock,
            **scheduler_options,
        )
        self.matcher = EventMatcher(webhooks)
        self.registry = WebhookRegistry(webhooks, self.executor, clock=self.clock)
        self.dispatcher = WebhookDispatcher(
            webhooks, events, self.matcher, self.scheduler, clock=self.clock
        )

        self._tasks: list[asyncio.Task] = []
        self._closers: list[Closer] = []

    def add_closer(self, closer: Closer) -> None:
        self._closers.append(closer)

    async def start(self, background: bool = True) -> None:
        """Start workers, recover interrupted deliveries, then launch the sweeper and monitor."""
        if self.pool is not None:
            self.pool.start()
        await self.scheduler.recover()
        if background:
            self._tasks.append(asyncio.create_task(self.scheduler.run_sweeper()))
            self._tasks.append(asyncio.create_task(self.monitoring.run_health_checks()))
        logger.info("Webhook engine started")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self.pool is not None:
            await self.pool.stop()
        await self.executor.aclose()
        for closer in reversed(self._closers):
            try:
                await closer()
            except Exception:
                logger.exception("Error while shutting down engine resource")
        logger.info("Webhook engine stopped")


def build_memory_engine(
    clock: Callable[[], datetime] | None = None,
    client: httpx.AsyncClient | None = None,
    worker_count: int | None = None,
    **scheduler_options: Any,
) -> WebhookEngine:
    webhooks = InMemoryWebhookStore()
    return WebhookEngine(
        webhooks,
        InMemoryEventStore(),
        InMemoryDeliveryStore(),
        InMemoryDeliveryLogStore(),
        executor=DeliveryExecutor(client=client, clock=clock) if client else None,
        clock=clock,
        worker_count=worker_count,
        **scheduler_options,
    )


async def build_engine(config: Settings | None = None) -> WebhookEngine:
    """Build the engine for the configured store and rate-limit backends."""
    config = config or default_settings
    closers: list[Closer] = []

    if config.uses_sql_store:
        db_engine = make_engine(config.database_url)
        if config.env == "development":
            await create_tables(db_engine)
        session_factory = make_session_factory(db_engine)
        webhooks: WebhookStore = SqlWebhookStore(session_factory)
        events: EventStore = SqlEventStore(session_factory)
        deliveries: DeliveryStore = SqlDeliveryStore(session_factory)
        logs: DeliveryLogStore = SqlDeliveryLogStore(session_factory)
        closers.append(db_engine.dispose)
    else:
        webhooks = InMemoryWebhookStore()
        events = InMemoryEventStore()
        deliveries = InMemoryDeliveryStore()
        logs = InMemoryDeliveryLogStore()

    rate_limiter: RateLimiter
    if config.rate_limit_backend == "redis":
        redis = make_redis(config.redis_url)
        rate_limiter = RedisRateLimiter(redis, webhooks)
        closers.append(redis.aclose)
    else:
        rate_limiter = InMemoryRateLimiter(webhooks)

    engine = WebhookEngine(
        webhooks, events, deliveries, logs,
        rate_limiter=rate_limiter,
        config=config,
    )
    for closer in closers:
        engine.add_closer(closer)
    logger.info(
        "Built webhook engine (store=%s, rate_limit=%s, workers=%d)",
        config.store_backend, config.rate_limit_backend, config.dispatch_worker_count,
    )
    return engine
