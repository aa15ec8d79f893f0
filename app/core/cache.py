from typing import Optional

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from app.config import get_settings

logger = structlog.get_logger()

_redis: Optional[aioredis.Redis] = None


async def get_redis() -> aioredis.Redis:
    """Shared client for the Redis completion queue. Connects lazily."""
    global _redis
    if _redis is None:
        settings = get_settings()
        _redis = aioredis.from_url(
            settings.REDIS_URL,
            password=settings.REDIS_PASSWORD or None,
            encoding="utf-8",
            decode_responses=True,
        )
    return _redis


async def ping_redis() -> bool:
    try:
        return bool(await (await get_redis()).ping())
    except RedisError as e:
        logger.warning("redis_unreachable", error=str(e))
        return False


async def close_redis():
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
