"""
Redis caching for community-rating reads.

CACHING STRATEGY
================

What we cache:
  - GetCommunityRating responses, JSON-serialized
  - Cache key pattern: "community_rating:{user_id}"

Invalidation strategy:
  - After each community-rating recompute (outbox handler): delete the key
  - TTL-based expiry as safety net (REDIS_CACHE_TTL)

Why NOT cache bookings or slot inventory:
  - Capacity must be read from the database at reservation time
  - Booking state is written by two paths (ledger and reconciliation)

Redis is advisory: when it is disabled or failing, reads fall through to
the database.
"""

import json
from typing import Optional

from redis.exceptions import RedisError

from activity_booking.core.config import get_settings
from activity_booking.core.logging import get_logger
from activity_booking.core.metrics import record_cache_operation
from activity_booking.infrastructure.redis_client import get_redis

logger = get_logger(__name__)
settings = get_settings()


def _make_community_rating_key(user_id: str) -> str:
    return f"community_rating:{user_id}"


async def get_cached_community_rating(user_id: str) -> Optional[dict]:
    client = await get_redis()
    if not client:
        return None

    key = _make_community_rating_key(user_id)
    try:
        data = await client.get(key)
    except RedisError as e:
        logger.error("cache_get_error", key=key, error=str(e))
        return None

    record_cache_operation("get", hit=data is not None)
    if data:
        logger.debug("cache_hit", key=key)
        return json.loads(data)
    logger.debug("cache_miss", key=key)
    return None


async def set_cached_community_rating(user_id: str, data: dict) -> None:
    client = await get_redis()
    if not client:
        return

    key = _make_community_rating_key(user_id)
    try:
        await client.setex(key, settings.REDIS_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.REDIS_CACHE_TTL)
    except RedisError as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_community_rating(*user_ids: str) -> None:
    client = await get_redis()
    if not client or not user_ids:
        return

    keys = [_make_community_rating_key(u) for u in user_ids]
    try:
        deleted = await client.delete(*keys)
        logger.info("cache_invalidated", keys_deleted=deleted)
    except RedisError as e:
        logger.error("cache_invalidation_error", error=str(e))


async def get_cache_stats() -> dict:
    """Get Redis cache statistics for monitoring."""
    client = await get_redis()
    if not client:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
    except RedisError as e:
        return {"status": "error", "error": str(e)}

    hits = info.get("keyspace_hits", 0)
    misses = info.get("keyspace_misses", 0)
    return {
        "status": "connected",
        "hits": hits,
        "misses": misses,
        "hit_rate": round(hits / max(hits + misses, 1) * 100, 2),
    }
