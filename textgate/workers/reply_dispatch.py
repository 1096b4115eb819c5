"""
Reply dispatch worker - sends queued STOP/HELP replies that no request sent.

Replies are normally dispatched right after the webhook is acknowledged. This
sweep covers the ones left behind: the process exited first, or the reply was
queued while a retried event was processed. A reply another dispatcher holds a
live claim on is skipped.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from textgate.config import get_settings
from textgate.services.keyword_processor import KeywordProcessor

logger = logging.getLogger(__name__)

HEARTBEAT_KEY = "worker_health:reply_dispatch"


async def _heartbeat() -> None:
    try:
        from textgate.utils.redis_client import get_redis, redis_key
        redis = await get_redis()
        await redis.set(
            redis_key(HEARTBEAT_KEY),
            datetime.now(timezone.utc).isoformat(),
            ex=300,
        )
    except Exception as e:
        logger.debug("Reply dispatch heartbeat failed: %s", str(e))


async def run_reply_dispatch_worker(keyword_processor: Optional[KeywordProcessor] = None) -> None:
    """Main loop. Runs until cancelled."""
    settings = get_settings()
    if keyword_processor is None:
        from textgate.services.messaging import get_messaging_service
        keyword_processor = get_messaging_service().keyword_processor
    logger.info("Reply dispatch worker started")

    while True:
        try:
            sent = await dispatch_pending_replies(keyword_processor, settings.reply_dispatch_batch_size)
            if sent > 0:
                logger.info("Reply dispatch worker attempted %d queued replies", sent)
        except Exception as e:
            logger.error("Reply dispatch worker error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(settings.reply_dispatch_poll_seconds)


async def dispatch_pending_replies(keyword_processor: KeywordProcessor, limit: int = 25) -> int:
    return await keyword_processor.dispatch_pending(limit)
