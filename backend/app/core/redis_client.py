"""
Redis client initialization.

Redis backs the HTTP idempotency response cache. The database stays the
source of truth; Redis being down only costs a re-read.
"""

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError
from backend.app.core.config import settings

logger = logging.getLogger(__name__)

redis_client = redis.from_url(
    settings.redis_url,
    decode_responses=settings.redis_decode_responses,
)


async def get_redis():
    """FastAPI dependency returning the shared Redis client."""
    return redis_client


async def ping_redis() -> bool:
    """True if Redis answers, False otherwise."""
    try:
        return await redis_client.ping()
    except (RedisError, OSError) as e:
        logger.warning("Redis ping failed: %s", e)
        return False
