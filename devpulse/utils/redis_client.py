"""
Shared async Redis connection and best-effort queue signalling.

Redis is never the source of truth: the task_queue table is. Lane keys only
wake idle executors early, so every call here tolerates Redis being down.
"""
import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

_redis_client = None

LANE_NOTIFY_PREFIX = "devpulse:lane:"
HEARTBEAT_PREFIX = "devpulse:worker_health:"
HEARTBEAT_TTL_SECONDS = 120


def lane_key(lane: str) -> str:
    return f"{LANE_NOTIFY_PREFIX}{lane}"


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from devpulse.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except Exception as e:
            logger.debug("Redis close failed: %s", str(e))
    _redis_client = None


async def notify_lane(lane: str, task_id: str) -> bool:
    """Push a wake-up token for the lane. Returns False when Redis is unavailable."""
    try:
        redis = await get_redis()
        await redis.lpush(lane_key(lane), task_id)
        return True
    except Exception as e:
        logger.debug("Failed to notify lane %s: %s", lane, str(e))
        return False


async def wait_for_lane(lane: str, timeout: float) -> bool:
    """
    Block until a wake-up token arrives for the lane or the timeout expires.
    Returns True if woken by a token, False on timeout.
    Raises when Redis is unavailable so the caller can fall back to sleeping.
    """
    redis = await get_redis()
    # BRPOP takes whole seconds; 0 would block forever
    result = await redis.brpop(lane_key(lane), timeout=max(1, int(timeout)))
    return bool(result)


async def heartbeat(worker_name: str) -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        redis = await get_redis()
        await redis.set(
            f"{HEARTBEAT_PREFIX}{worker_name}",
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))

