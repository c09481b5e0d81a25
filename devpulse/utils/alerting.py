"""
Operational alerting - notifies operators about pipeline health events.

Alert channels:
1. Structured log (always) - at ERROR or CRITICAL level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: Per-type cooldowns to prevent alert storms.
Cooldowns stored in Redis (survives restarts), with an in-memory fallback.
These are infrastructure alerts; flaky-test alerts live in services/alerts.py.
"""
import logging
import time
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_signature_invalid": 900,
}

# In-memory fallback when Redis is down
_local_cooldowns: dict[str, float] = {}  # alert_type -> expiry timestamp


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class AlertType:
    """Alert type constants."""
    DEAD_LETTER_EXHAUSTED = "dead_letter_exhausted"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    INGRESS_STORAGE_FAILED = "ingress_storage_failed"
    WORKER_CRASHED = "worker_crashed"


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> bool:
    """
    Send an alert through all configured channels.
    Rate-limited per alert type. Returns False when suppressed by cooldown.
    """
    if not await _acquire_cooldown(alert_type):
        return False

    from devpulse.utils.logging import get_correlation_id
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


async def _acquire_cooldown(alert_type: str) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.
    Uses Redis SET NX EX; falls back to an in-memory dict when Redis is unavailable.
    """
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        from devpulse.utils.redis_client import get_redis
        redis = await get_redis()
        acquired = await redis.set(
            f"devpulse:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown,
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        expiry = _local_cooldowns.get(alert_type, 0)
        if now < expiry:
            return False
        _local_cooldowns[alert_type] = now + cooldown
        return True


async def post_to_alert_webhook(content: str, webhook_url: Optional[str] = None) -> bool:
    """
    POST a Slack/Discord compatible message. Returns True on a 2xx response.
    Without an explicit webhook_url the configured ALERT_WEBHOOK_URL is used.
    """
    if webhook_url is None:
        from devpulse.config import get_settings
        webhook_url = get_settings().alert_webhook_url
    if not webhook_url:
        return False

    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            response = await client.post(webhook_url, json={"content": content, "text": content})
        if response.status_code >= 300:
            logger.warning("Alert webhook returned HTTP %d", response.status_code)
            return False
        return True
    except Exception as e:
        # Alert sending failure should never crash the pipeline
        logger.warning("Failed to send webhook alert: %s", str(e))
        return False


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    severity_emoji = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}.get(
        severity, "ℹ️"
    )
    content = f"{severity_emoji} **{alert_type}**\n{message}"
    if correlation_id:
        content += f"\n`correlation_id: {correlation_id}`"
    if extra:
        for key, val in extra.items():
            content += f"\n`{key}: {val}`"

    await post_to_alert_webhook(content)
