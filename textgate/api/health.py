"""
Health endpoints for load balancers and monitoring.

- GET /health       - liveness, 200 while the process is up
- GET /health/ready - database (critical) and Redis
- GET /health/deep  - readiness plus retry worker heartbeat and webhook backlog
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from textgate.database import get_db, ping
from textgate.models.webhook_event import WebhookEvent

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"

# Worker polls every webhook_retry_poll_seconds; three missed beats is stale
HEARTBEAT_STALE_SECONDS = 180


@router.get("/health")
async def health_check():
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
    Database down means not ready. Redis only backs alert cooldowns and the
    optional fleet-wide rate buckets, so a Redis outage is reported as degraded.
    """
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis())["healthy"],
    }
    if not checks["database"]:
        status = "unavailable"
    elif not checks["redis"]:
        status = "degraded"
    else:
        status = "ready"
    return {
        "status": status,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(
    db: AsyncSession = Depends(get_db),
):
    now = datetime.now(timezone.utc)
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
        "webhook_retry_worker": await _check_worker(now, "webhook_retry"),
        "reply_dispatch_worker": await _check_worker(now, "reply_dispatch"),
    }
    if checks["database"]["healthy"]:
        checks["webhook_backlog"] = await _webhook_backlog(db)

    if not checks["database"]["healthy"]:
        status = "unhealthy"
    elif all(c.get("healthy", True) for c in checks.values()):
        status = "healthy"
    else:
        status = "degraded"

    return {
        "status": status,
        "checks": checks,
        "timestamp": now.isoformat(),
        "version": VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    try:
        await ping(db)
        return {"healthy": True}
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    try:
        from textgate.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_worker(now: datetime, worker: str) -> dict:
    """Heartbeat freshness of an in-process worker."""
    try:
        from textgate.utils.redis_client import get_redis, redis_key
        redis = await get_redis()
        raw = await redis.get(redis_key(f"worker_health:{worker}"))
    except Exception as e:
        return {"healthy": False, "error": str(e)}

    if not raw:
        return {"healthy": False, "error": "no heartbeat"}
    try:
        last_beat = datetime.fromisoformat(raw)
    except (TypeError, ValueError):
        return {"healthy": False, "error": f"unreadable heartbeat {raw!r}"}
    age = (now - last_beat).total_seconds()
    return {
        "healthy": age <= HEARTBEAT_STALE_SECONDS,
        "last_heartbeat": raw,
        "age_seconds": round(age, 1),
    }


async def _webhook_backlog(db: AsyncSession) -> dict:
    """Webhook events waiting for a retry, and events that gave up."""
    result = await db.execute(
        select(WebhookEvent.processing_status, func.count())
        .where(WebhookEvent.processing_status.in_(("retrying", "dead")))
        .group_by(WebhookEvent.processing_status)
    )
    counts = {status: count for status, count in result.all()}
    return {"retrying": counts.get("retrying", 0), "dead": counts.get("dead", 0)}
