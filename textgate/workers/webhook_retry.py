"""
Webhook retry worker - re-processes webhook events whose retry is due, and
events left in processing past the lease by a worker that died.
Polls every webhook_retry_poll_seconds. Safe to run in every process: each
row is claimed before it is processed.
Events exceeding max_retries are marked dead by the reconciler itself.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from textgate.config import get_settings
from textgate.services.webhook_reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "worker_health:webhook_retry"


async def _heartbeat() -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        from textgate.utils.redis_client import get_redis, redis_key
        redis = await get_redis()
        await redis.set(
            redis_key(HEARTBEAT_KEY),
            datetime.now(timezone.utc).isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Webhook retry heartbeat failed: %s", str(e))


async def run_webhook_retry_worker(reconciler: Optional[WebhookReconciler] = None) -> None:
    """Main retry loop. Runs until cancelled."""
    settings = get_settings()
    if reconciler is None:
        from textgate.services.messaging import get_messaging_service
        reconciler = get_messaging_service().reconciler
    logger.info("Webhook retry worker started")

    while True:
        try:
            processed = await retry_due_events(reconciler, settings.webhook_retry_batch_size)
            if processed > 0:
                logger.info("Webhook retry worker re-processed %d events", processed)
        except Exception as e:
            logger.error("Webhook retry worker error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(settings.webhook_retry_poll_seconds)


async def retry_due_events(reconciler: WebhookReconciler, limit: int = 25) -> int:
    """One polling pass. Returns how many events were attempted."""
    results = await reconciler.process_due(limit)
    dead = [r.event_id for r in results if r.status == "dead"]
    if dead:
        logger.warning("Webhook events dead after final retry: %s", ", ".join(dead))
    return len(results)
