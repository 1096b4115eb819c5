"""
Operator alerting for security and delivery events.

Channels:
1. Structured log, at ERROR (CRITICAL for severity="critical")
2. Discord/Slack webhook when ALERT_WEBHOOK_URL is set
3. Sentry message for critical alerts when Sentry is initialised

Cooldowns are per (alert_type, subject). Without a subject an alert type fires
at most once per cooldown; with one (an event id, a message id) each subject
gets its own cooldown, so one dead event never hides another. Cooldowns live
in Redis (SET NX EX, shared by every worker) with an in-memory fallback.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

ALERT_COOLDOWN_SECONDS = 300

ALERT_COOLDOWN_OVERRIDES: dict[str, int] = {
    "webhook_signature_invalid": 900,  # bursts from one misconfigured sender
    "transition_anomaly": 900,
    "webhook_event_dead": 86400,  # keyed per event id
}

_local_cooldowns: dict[str, float] = {}  # cooldown key → expiry (monotonic)


class AlertType:
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    WEBHOOK_EVENT_DEAD = "webhook_event_dead"
    DISPATCH_FAILED = "dispatch_failed"
    TRANSITION_ANOMALY = "transition_anomaly"


def _cooldown_key(alert_type: str, subject: Optional[str]) -> str:
    return f"{alert_type}:{subject}" if subject else alert_type


async def send_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str] = None,
    severity: str = "error",
    extra: Optional[dict] = None,
    subject: Optional[str] = None,
) -> bool:
    """
    Send an alert through every configured channel.
    Returns False when the alert was suppressed by its cooldown.
    """
    if not await _acquire_cooldown(alert_type, subject):
        logger.debug("Alert %s suppressed (cooldown)", _cooldown_key(alert_type, subject))
        return False

    from textgate.utils.logging import get_correlation_id
    cid = correlation_id or get_correlation_id()

    log_message = f"ALERT [{alert_type}]: {message}"
    if cid:
        log_message += f" (correlation_id={cid})"
    if severity == "critical":
        logger.critical(log_message)
        _capture_in_sentry(alert_type, message, extra)
    else:
        logger.error(log_message)

    await _send_webhook_alert(alert_type, message, severity, cid, extra)
    return True


async def _acquire_cooldown(alert_type: str, subject: Optional[str] = None) -> bool:
    """Check-and-set the cooldown atomically. True means the alert may fire."""
    key = _cooldown_key(alert_type, subject)
    cooldown = ALERT_COOLDOWN_OVERRIDES.get(alert_type, ALERT_COOLDOWN_SECONDS)

    try:
        from textgate.utils.redis_client import get_redis, redis_key
        redis = await get_redis()
        acquired = await redis.set(redis_key("alert_cooldown", key), "1", nx=True, ex=cooldown)
        return bool(acquired)
    except Exception as e:
        logger.debug("Alert cooldown Redis check failed, using in-memory fallback: %s", str(e))
        now = time.monotonic()
        if now < _local_cooldowns.get(key, 0):
            return False
        _local_cooldowns[key] = now + cooldown
        return True


def _capture_in_sentry(alert_type: str, message: str, extra: Optional[dict]) -> None:
    try:
        import sentry_sdk
        sentry_sdk.capture_message(
            f"[{alert_type}] {message}",
            level="fatal",
            tags={"alert_type": alert_type},
            extras=dict(extra or {}),
        )
    except Exception as e:
        logger.warning("Failed to forward alert to Sentry: %s", str(e))


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    severity: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """POST to the configured Discord/Slack webhook. Never raises."""
    try:
        from textgate.config import get_settings
        webhook_url = get_settings().alert_webhook_url
        if not webhook_url:
            return

        import httpx

        prefix = {"critical": "\U0001f6a8", "error": "❌", "warning": "⚠️"}.get(severity, "ℹ️")
        lines = [f"{prefix} **{alert_type}**", message]
        if correlation_id:
            lines.append(f"`correlation_id: {correlation_id}`")
        lines.extend(f"`{key}: {val}`" for key, val in (extra or {}).items())

        async with httpx.AsyncClient(timeout=5.0) as client:
            await client.post(webhook_url, json={"content": "\n".join(lines)})
    except Exception as e:
        logger.warning("Failed to send webhook alert: %s", str(e))
