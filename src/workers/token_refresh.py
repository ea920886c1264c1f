"""
Token refresh worker - keeps every company's rotating refresh token warm.

GHL refresh tokens expire when unused; refreshing on a schedule means a quiet
clinic never comes back to a dead credential. Runs in-process every
token_refresh_interval_seconds when enabled, or on demand through /api/v1/cron/refresh-ghl-tokens.
"""
import asyncio
import logging

from src.config import get_settings
from src.integrations.ghl_oauth import get_token_broker
from src.utils.redis_client import record_heartbeat

logger = logging.getLogger(__name__)

WORKER_NAME = "token_refresh"


async def run_token_refresh():
    interval = get_settings().token_refresh_interval_seconds
    logger.info("Token refresh worker started (every %ds)", interval)

    while True:
        try:
            await refresh_all_tokens()
        except Exception as e:
            logger.error("Token refresh error: %s", str(e))

        await record_heartbeat(WORKER_NAME)
        await asyncio.sleep(interval)


async def refresh_all_tokens(broker=None) -> dict[str, str]:
    """Force-refresh all company and location tokens. Returns key -> outcome."""
    broker = broker or get_token_broker()
    results = await broker.refresh_all()
    failures = {k: v for k, v in results.items() if v != "refreshed"}
    if failures:
        logger.warning("Token refresh incomplete: %s", failures)
    else:
        logger.info("Refreshed %d tokens", len(results))
    return results
