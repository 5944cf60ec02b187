"""
Idempotency response cache.

Keeps the serialized response of a create call under the caller's
Idempotency-Key in Redis, so a client retrying after a timeout gets the
same body back without touching the database. The unique idempotency key
on the shipment row is the real guarantee; this cache is a fast path.
"""

import json
import logging
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


def cache_key(scope: str, owner_id: int, idempotency_key: str) -> str:
    return f"idempotency:{scope}:{owner_id}:{idempotency_key}"


class IdempotencyCache:

    def __init__(self, redis):
        self.redis = redis

    async def get(self, scope: str, owner_id: int, idempotency_key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.redis.get(cache_key(scope, owner_id, idempotency_key))
        except (RedisError, OSError) as e:
            logger.warning("Idempotency cache read failed: %s", e)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable idempotency entry for %s", idempotency_key)
            return None

    async def set(self, scope: str, owner_id: int, idempotency_key: str, body: Dict[str, Any]):
        try:
            await self.redis.set(
                cache_key(scope, owner_id, idempotency_key),
                json.dumps(body),
                ex=settings.idempotency_cache_ttl_seconds,
            )
        except (RedisError, OSError) as e:
            logger.warning("Idempotency cache write failed: %s", e)
