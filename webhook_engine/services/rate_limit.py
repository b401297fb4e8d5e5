"""Per-webhook hourly and daily delivery limits.

Fixed UTC windows: the hour bucket is keyed ``YYYY-MM-DDTHH`` and the day
bucket ``YYYY-MM-DD``. An admission increments both counters or neither,
so a rejected delivery never eats into the quota.
"""

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Literal

import redis.asyncio as aioredis

from webhook_engine.exceptions import WebhookNotFoundError
from webhook_engine.stores.base import WebhookStore

logger = logging.getLogger(__name__)

Window = Literal["hour", "day"]

# Lua script for atomic check-and-increment of both windows
_FIXED_WINDOW_SCRIPT = """
local hour_key = KEYS[1]
local day_key = KEYS[2]
local hour_limit = tonumber(ARGV[1])
local day_limit = tonumber(ARGV[2])
local hour_ttl = tonumber(ARGV[3])
local day_ttl = tonumber(ARGV[4])

local hour_count = tonumber(redis.call('GET', hour_key) or '0')
local day_count = tonumber(redis.call('GET', day_key) or '0')

if hour_count >= hour_limit or day_count >= day_limit then
    return {0, hour_count, day_count}
end

hour_count = redis.call('INCR', hour_key)
if hour_count == 1 then
    redis.call('EXPIRE', hour_key, hour_ttl)
end
day_count = redis.call('INCR', day_key)
if day_count == 1 then
    redis.call('EXPIRE', day_key, day_ttl)
end
return {1, hour_count, day_count}
"""


@dataclass
class RateLimitDecision:
    allowed: bool
    current: int
    limit: int
    reset_at: datetime
    window: Window


def hour_bucket(now: datetime) -> str:
    return now.astimezone(UTC).strftime("%Y-%m-%dT%H")


def day_bucket(now: datetime) -> str:
    return now.astimezone(UTC).strftime("%Y-%m-%d")


def next_hour(now: datetime) -> datetime:
    now = now.astimezone(UTC)
    return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def next_day(now: datetime) -> datetime:
    now = now.astimezone(UTC)
    return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)


def _decide(
    allowed: bool,
    hour_count: int,
    day_count: int,
    hour_limit: int,
    day_limit: int,
    now: datetime,
) -> RateLimitDecision:
    if not allowed and hour_count < hour_limit:
        # Only the day window is exhausted
        return RateLimitDecision(False, day_count, day_limit, next_day(now), "day")
    if not allowed and day_count >= day_limit:
        # Both exhausted: the day window binds longer
        return RateLimitDecision(False, day_count, day_limit, next_day(now), "day")
    return RateLimitDecision(allowed, hour_count, hour_limit, next_hour(now), "hour")


class InMemoryRateLimiter:
    """Single-process counters; old buckets are pruned as windows roll over."""

    def __init__(
        self,
        webhooks: WebhookStore,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._webhooks = webhooks
        self._clock = clock or (lambda: datetime.now(UTC))
        self._hourly: dict[tuple[uuid.UUID, str], int] = {}
        self._daily: dict[tuple[uuid.UUID, str], int] = {}

    async def admit(self, webhook_id: uuid.UUID) -> RateLimitDecision:
        webhook = await self._webhooks.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)

        now = self._clock()
        hour_key = (webhook_id, hour_bucket(now))
        day_key = (webhook_id, day_bucket(now))
        self._prune(hour_key[1], day_key[1])

        hour_count = self._hourly.get(hour_key, 0)
        day_count = self._daily.get(day_key, 0)
        allowed = (
            hour_count < webhook.rate_limit_per_hour
            and day_count < webhook.rate_limit_per_day
        )
        if allowed:
            hour_count += 1
            day_count += 1
            self._hourly[hour_key] = hour_count
            self._daily[day_key] = day_count

        return _decide(
            allowed, hour_count, day_count,
            webhook.rate_limit_per_hour, webhook.rate_limit_per_day, now,
        )

    def _prune(self, current_hour: str, current_day: str) -> None:
        for key in [k for k in self._hourly if k[1] != current_hour]:
            del self._hourly[key]
        for key in [k for k in self._daily if k[1] != current_day]:
            del self._daily[key]


class RedisRateLimiter:
    """Counters shared across processes; keys expire shortly after their window."""

    def __init__(
        self,
        redis: aioredis.Redis,
        webhooks: WebhookStore,
        clock: Callable[[], datetime] | None = None,
        key_prefix: str = "webhook:ratelimit",
    ) -> None:
        self._redis = redis
        self._webhooks = webhooks
        self._clock = clock or (lambda: datetime.now(UTC))
        self._prefix = key_prefix

    async def admit(self, webhook_id: uuid.UUID) -> RateLimitDecision:
        webhook = await self._webhooks.get(webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(webhook_id)

        now = self._clock()
        hour_key = f"{self._prefix}:{webhook_id}:hour:{hour_bucket(now)}"
        day_key = f"{self._prefix}:{webhook_id}:day:{day_bucket(now)}"
        hour_ttl = int((next_hour(now) - now).total_seconds()) + 60
        day_ttl = int((next_day(now) - now).total_seconds()) + 60

        result = await self._redis.eval(
            _FIXED_WINDOW_SCRIPT, 2, hour_key, day_key,
            webhook.rate_limit_per_hour, webhook.rate_limit_per_day,
            hour_ttl, day_ttl,
        )
        allowed, hour_count, day_count = bool(int(result[0])), int(result[1]), int(result[2])

        decision = _decide(
            allowed, hour_count, day_count,
            webhook.rate_limit_per_hour, webhook.rate_limit_per_day, now,
        )
        if not decision.allowed:
            logger.info(
                "Rate limit reached for webhook %s (%s window, %d/%d)",
                webhook_id, decision.window, decision.current, decision.limit,
            )
        return decision
