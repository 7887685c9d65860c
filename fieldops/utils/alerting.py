"""
Operator alerting - notifies whoever runs the platform (not tenant owners)
about failures inside the orchestration core.

Alert channels:
1. Structured log (always) - at ERROR level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: per-type cooldowns in Redis (SET NX EX), with an in-memory
fallback when Redis is down.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Per-type cooldown overrides (seconds)
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "task_claim_failed": 900,
    "monitor_pass_failed": 900,
}

_local_cooldowns: dict[str, float] = {}  # alert_type -> expiry (monotonic)


def _get_cooldown_seconds(alert_type: str) -> int:
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class AlertType:
    """Alert type constants."""
    TASK_CLAIM_FAILED = "task_claim_failed"
    TASK_FAILED = "task_failed"
    MONITOR_PASS_FAILED = "monitor_pass_failed"
    DELIVERY_FAILED = "delivery_failed"
    OWNER_PHONE_MISSING = "owner_phone_missing"


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
) -> None:
    """
    Send an alert through all configured channels.
    Rate-limited per alert type to prevent alert storms.
    """
    if not await _acquire_cooldown(alert_type):
        return

    from fieldops.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)


async def _acquire_cooldown(alert_type: str) -> bool:
    """Atomically check-and-set the cooldown. Returns True if the alert should go out."""
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        from fieldops.utils.cache import get_redis
        redis = await get_redis()
        acquired = await redis.set(
            f"fieldops:alert_cooldown:{alert_type}", "1", nx=True, ex=cooldown,
        )
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(alert_type, 0):
            return False
        _local_cooldowns[alert_type] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """Send alert to the configured webhook (Discord/Slack compatible)."""
    try:
        from fieldops.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        prefix = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}.get(severity, "ℹ️")
        content = f"{prefix} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        for key, val in (extra or {}).items():
            content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert delivery must never take down the caller
        logger.warning("Failed to send webhook alert: %s", str(e))
