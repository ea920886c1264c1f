"""
Shared-secret guards for scheduler and operator endpoints.

- Scheduler (cron) endpoints: CRON_SECRET via "Authorization: Bearer <secret>"
  or "X-Cron-Secret". Unset secret = unguarded (development only).
- Operator endpoints: ADMIN_API_KEY via "X-API-Key". Unset key = disabled.
"""
import hmac
import logging
from fastapi import Request, HTTPException
from src.config import get_settings

logger = logging.getLogger(__name__)


def _matches(provided: str, expected: str) -> bool:
    return bool(provided) and hmac.compare_digest(provided, expected)


async def require_cron_secret(request: Request) -> None:
    """Dependency guarding scheduler-triggered endpoints."""
    secret = get_settings().cron_secret
    if not secret:
        if get_settings().app_env == "production":
            logger.error("CRON_SECRET not set in production - rejecting scheduler call")
            raise HTTPException(status_code=503, detail="Scheduler secret not configured")
        return

    auth = request.headers.get("Authorization", "")
    token = auth[7:] if auth.startswith("Bearer ") else ""
    if not token:
        token = request.headers.get("X-Cron-Secret", "")

    if not _matches(token, secret):
        raise HTTPException(status_code=401, detail="Unauthorized")


async def require_admin_key(request: Request) -> None:
    """Dependency guarding operator tooling."""
    key = get_settings().admin_api_key
    if not key:
        raise HTTPException(status_code=503, detail="Operator endpoints disabled")

    if not _matches(request.headers.get("X-API-Key", ""), key):
        raise HTTPException(status_code=401, detail="Unauthorized")
