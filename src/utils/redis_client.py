"""
Shared async Redis connection plus worker heartbeat helpers.
Redis is an optimisation here (locks, cooldowns, heartbeats) - callers must
degrade gracefully when it is unavailable.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

KEY_PREFIX = "recon"
HEARTBEAT_TTL_SECONDS = 300

_redis_client = None


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from src.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def make_key(*parts: str) -> str:
    """Namespace a Redis key: make_key("lock", "x") -> "recon:lock:x"."""
    return ":".join((KEY_PREFIX,) + parts)


async def record_heartbeat(worker_name: str) -> None:
    """Store heartbeat timestamp in Redis for health monitoring."""
    try:
        redis = await get_redis()
        await redis.set(
            make_key("worker_health", worker_name),
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", worker_name, str(e))


async def get_heartbeat(worker_name: str) -> Optional[str]:
    """Return the last heartbeat ISO timestamp for a worker, or None."""
    try:
        redis = await get_redis()
        return await redis.get(make_key("worker_health", worker_name))
    except Exception as e:
        logger.debug("Heartbeat read failed for %s: %s", worker_name, str(e))
        return None
