"""
Shared Redis connection - worker heartbeats and rate counters.
Redis is never on the critical path: callers treat errors as "unavailable"
and fail open.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

HEARTBEAT_KEY_PREFIX = "intakewire:worker_health"

# Redis client (lazily initialized)
_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from intakewire.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def write_heartbeat(worker_name: str, ttl_seconds: int = 300) -> None:
    """Store a worker heartbeat timestamp. Errors are logged at debug and dropped."""
    try:
        redis = await get_redis()
        await redis.set(
            f"{HEARTBEAT_KEY_PREFIX}:{worker_name}",
            datetime.now(timezone.utc).isoformat(),
            ex=ttl_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))


async def hit_rate_limit(key: str, limit: int, window_seconds: int = 60) -> bool:
    """
    Increment a fixed-window counter and report whether it is over the limit.

    The counter lives in Redis (atomic INCR) so every process shares one owner.
    Returns False when Redis is unavailable.
    """
    try:
        redis = await get_redis()
        count = await redis.incr(key)
        if count == 1:
            await redis.expire(key, window_seconds)
        return count > limit
    except Exception as e:
        logger.warning("Rate limiting unavailable (Redis error): %s", str(e))
        return False
