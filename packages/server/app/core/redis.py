"""Redis connection used to fan committed row changes out to realtime streams."""

from __future__ import annotations

import redis.asyncio as redis
import structlog

from app.core.config import get_settings

settings = get_settings()
log = structlog.get_logger()

CHANGES_CHANNEL = "klypp:realtime:changes"

_redis_pool: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Get or create the shared Redis client."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = redis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
    return _redis_pool


async def ping_redis() -> bool:
    """Readiness probe: True when Redis answers PING."""
    try:
        client = await get_redis()
        return bool(await client.ping())
    except redis.RedisError as exc:
        log.warning("redis.ping_failed", error=str(exc))
        return False


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.close()
        _redis_pool = None
