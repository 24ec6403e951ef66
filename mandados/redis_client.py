"""
Shared async Redis client: courier positions, availability flags and session tokens.
"""
import logging

import redis.asyncio as redis
from mandados.config import settings

logger = logging.getLogger(__name__)

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def uses_redis() -> bool:
    return settings.location_backend == "redis" or settings.auth_backend == "redis"


async def redis_ready() -> bool:
    """True when Redis answers PING, or when no backend is configured to use it."""
    if not uses_redis():
        return True
    try:
        r = await get_redis()
        return bool(await r.ping())
    except redis.RedisError as e:
        logger.warning("Redis not reachable: %s", e)
        return False
