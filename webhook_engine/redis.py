import redis.asyncio as aioredis

from webhook_engine.config import settings


def make_redis(url: str | None = None) -> aioredis.Redis:
    pool = aioredis.ConnectionPool.from_url(url or settings.redis_url)
    return aioredis.Redis(connection_pool=pool)
