"""
Redis single-flight lock for queue processor runs.

The move queue has no per-row leasing, so two overlapping processor runs could
push the same move twice. Each run takes this lock (SET NX with TTL) first.
"""
import logging
import uuid
from contextlib import asynccontextmanager

from src.utils.redis_client import get_redis, make_key

logger = logging.getLogger(__name__)

LOCK_TTL_SECONDS = 300


class LockUnavailableError(Exception):
    """Raised when another holder owns the lock."""
    pass


@asynccontextmanager
async def single_flight(name: str, ttl: int = LOCK_TTL_SECONDS):
    """
    Hold a named run lock for the duration of the block.

    Raises LockUnavailableError if another run holds it. The TTL bounds how long
    a crashed holder can block later runs.

    Usage:
        async with single_flight("move_sync"):
            # drain the queue
    """
    lock_key = make_key("lock", name)
    lock_value = uuid.uuid4().hex  # Only release our own lock

    acquired = await _acquire_lock(lock_key, lock_value, ttl)
    if not acquired:
        raise LockUnavailableError(f"{name} is already running")
    try:
        yield
    finally:
        await _release_lock(lock_key, lock_value)


async def _acquire_lock(key: str, value: str, ttl: int) -> bool:
    """Single SET NX attempt; runs are periodic so there is no point waiting."""
    try:
        redis = await get_redis()
        was_set = await redis.set(key, value, nx=True, ex=ttl)
        return bool(was_set)
    except Exception as e:
        # Redis down: run anyway (single scheduler assumption still holds)
        logger.warning("Redis lock error for %s: %s. Proceeding without lock.", key, str(e))
        return True


async def _release_lock(key: str, value: str) -> None:
    """Release a Redis lock only if we still own it (compare-and-delete)."""
    try:
        redis = await get_redis()
        lua_script = """
        if redis.call('get', KEYS[1]) == ARGV[1] then
            return redis.call('del', KEYS[1])
        else
            return 0
        end
        """
        await redis.eval(lua_script, 1, key, value)
    except Exception as e:
        logger.warning("Redis lock release error for %s: %s", key, str(e))
