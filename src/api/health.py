"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/deep  - deep check (DB + Redis + move queue + GHL tokens + worker health)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from src.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
WORKER_NAMES = ("move_sync", "opportunity_sync", "token_refresh")


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Redis only backs locks, cooldowns and heartbeats, so it degrades rather than fails.
    """
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Deep health check.

    Checks:
    - PostgreSQL: SELECT 1
    - Redis: PING
    - Move queue: sync state (failed moves mark it unhealthy)
    - GHL OAuth: companies needing re-authorization
    - Workers: heartbeat freshness (only those running in-process)
    """
    now = datetime.now(timezone.utc)
    checks = {}

    checks["database"] = await _check_database(db)
    checks["redis"] = await _check_redis()
    if checks["database"]["healthy"]:
        checks["move_queue"] = await _check_move_queue(db)
        checks["ghl_tokens"] = await _check_tokens(db)
    checks["workers"] = await _check_workers()

    critical = ["database"]
    critical_healthy = all(checks.get(k, {}).get("healthy", False) for k in critical)
    all_healthy = all(c.get("healthy", False) for c in checks.values())

    if all_healthy:
        status = "healthy"
    elif critical_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return {
        "status": status,
        "checks": checks,
        "timestamp": now.isoformat(),
        "version": VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    """Check PostgreSQL connectivity."""
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"healthy": True}
    except Exception as e:
        logger.error("Health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    """Check Redis connectivity."""
    try:
        from src.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_move_queue(db: AsyncSession) -> dict:
    from src.services.sync_status import get_sync_state
    state = await get_sync_state(db)
    return {"healthy": state["status"] != "failed", **state}


async def _check_tokens(db: AsyncSession) -> dict:
    from src.services.sync_status import get_token_status
    status = await get_token_status(db)
    return {"healthy": status["ok"], "needs_reauth": status["needs_reauth"]}


async def _check_workers() -> dict:
    """Check worker heartbeat timestamps in Redis."""
    from src.config import get_settings
    from src.utils.redis_client import get_heartbeat

    settings = get_settings()
    enabled = {
        "move_sync": settings.sync_poll_interval_seconds > 0,
        "opportunity_sync": settings.opportunity_sync_interval_seconds > 0,
        "token_refresh": settings.token_refresh_interval_seconds > 0,
    }

    workers = {}
    for name in WORKER_NAMES:
        if not enabled[name]:
            continue
        heartbeat = await get_heartbeat(name)
        workers[name] = {
            "healthy": heartbeat is not None,
            "last_heartbeat": heartbeat,
        }

    all_healthy = all(w["healthy"] for w in workers.values())
    return {"healthy": all_healthy, "workers": workers}
