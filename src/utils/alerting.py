"""
Operator alerting - surfaces conditions that need a human.

Alert channels:
1. Structured log (always) - at ERROR/CRITICAL level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: per-type cooldowns stored in Redis (SET NX EX) so a company
that stays de-authorized does not page on every processor run.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "ghl_reauth_required": 3600,  # persists until an operator re-authorizes
}

# In-memory fallback when Redis is down (alert_type -> monotonic expiry)
_local_cooldowns: dict[str, float] = {}


class AlertType:
    """Alert type constants."""
    MOVE_SYNC_EXHAUSTED = "move_sync_exhausted"
    MOVE_SYNC_CONFIG_ERROR = "move_sync_config_error"
    GHL_REAUTH_REQUIRED = "ghl_reauth_required"
    GHL_TOKEN_PERSIST_FAILED = "ghl_token_persist_failed"
    OPPORTUNITY_SYNC_FAILED = "opportunity_sync_failed"


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
    cooldown_key: Optional[str] = None,
) -> bool:
    """
    Send an alert through all configured channels.
    cooldown_key narrows the rate limit (e.g. per company). Returns False when
    suppressed by cooldown.
    """
    if not await _acquire_cooldown(alert_type, cooldown_key):
        return False

    from src.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)
    return True


async def _acquire_cooldown(alert_type: str, cooldown_key: Optional[str]) -> bool:
    """Atomically check-and-set the cooldown. Returns True if the alert should go out."""
    cooldown = _get_cooldown_seconds(alert_type)
    scope = f"{alert_type}:{cooldown_key}" if cooldown_key else alert_type

    try:
        from src.utils.redis_client import get_redis, make_key
        redis = await get_redis()
        acquired = await redis.set(make_key("alert_cooldown", scope), "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(scope, 0):
            return False
        _local_cooldowns[scope] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    try:
        from src.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        marker = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}.get(severity, "ℹ️")
        content = f"{marker} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        for key, val in (extra or {}).items():
            content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert sending failure should never crash the system
        logger.warning("Failed to send webhook alert: %s", str(e))
