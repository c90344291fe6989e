"""
Operator alerting - sends alerts on conditions that need a human.

Alert channels:
1. Structured log (always) - at ERROR/CRITICAL level
2. Webhook (configurable) - Discord/Slack URL via ALERT_WEBHOOK_URL env var

Rate limiting: Per-type cooldowns to prevent alert storms.
Cooldowns stored in Redis (survives restarts, prevents post-deploy alert spam).
Default cooldown is 5 minutes; alerts driven by periodic checks use longer cooldowns.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300  # 5 minutes (default)

# Per-type cooldown overrides (seconds) for alerts raised by polling evaluators
ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_error_rate_high": 3600,
    "webhook_stuck_events": 900,
}

# In-memory fallback when Redis is down (cleared on restart, but prevents alert storms)
_local_cooldowns: dict[str, float] = {}  # cooldown key -> expiry timestamp


def _get_cooldown_seconds(alert_type: str) -> int:
    """Get cooldown duration for an alert type (per-type override or default)."""
    return ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)


class AlertType:
    """Alert type constants."""
    WEBHOOK_ERROR_RATE_HIGH = "webhook_error_rate_high"
    WEBHOOK_STUCK_EVENTS = "webhook_stuck_events"
    WEBHOOK_UNKNOWN_ERROR = "webhook_unknown_error"
    WEBHOOK_RETRIES_EXHAUSTED = "webhook_retries_exhausted"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    HEALTH_CHECK_FAILED = "health_check_failed"


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
    Rate-limited per alert type (or per cooldown_key, e.g. type + provider).
    Returns True if the alert went out, False if suppressed by cooldown.
    """
    if not await _acquire_cooldown(alert_type, cooldown_key or alert_type):
        return False

    from hookledger.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"

    if severity == "critical":
        logger.critical(log_message)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, cid, extra, severity)
    return True


async def _acquire_cooldown(alert_type: str, cooldown_key: str) -> bool:
    """
    Atomically check-and-set alert cooldown. Returns True if alert should be sent.

    Uses Redis SET NX EX (atomic) to eliminate the race between check and record.
    Falls back to in-memory dict when Redis is unavailable.
    """
    cooldown = _get_cooldown_seconds(alert_type)

    try:
        from hookledger.utils.redis_client import get_redis, KEY_PREFIX
        redis = await get_redis()
        key = f"{KEY_PREFIX}:alert_cooldown:{cooldown_key}"
        acquired = await redis.set(key, "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        expiry = _local_cooldowns.get(cooldown_key, 0)
        if now < expiry:
            return False
        _local_cooldowns[cooldown_key] = now + cooldown
        return True


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
    severity: str = "error",
) -> None:
    """Send alert to configured webhook (Discord/Slack)."""
    try:
        from hookledger.config import get_settings
        settings = get_settings()

        webhook_url = getattr(settings, "alert_webhook_url", "")
        if not webhook_url:
            return

        import httpx

        severity_emoji = {
            "critical": "\U0001f6a8", "error": "❌", "warning": "⚠️",
        }.get(severity, "ℹ️")
        content = f"{severity_emoji} **{alert_type}**\n{message}"
        if correlation_id:
            content += f"\n`correlation_id: {correlation_id}`"
        if extra:
            for key, val in extra.items():
                content += f"\n`{key}: {val}`"

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": content})
    except Exception as e:
        # Alert sending failure should never crash the system
        logger.warning("Failed to send webhook alert: %s", str(e))
