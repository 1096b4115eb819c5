"""
textgate - 10DLC message compliance & delivery engine.
FastAPI application: send API, gateway webhook ingress, health, and the
in-process webhook retry and reply dispatch workers.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from textgate.config import Settings, get_settings
from textgate.api.router import api_router
from textgate.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("textgate")

CORRELATION_HEADER = "X-Correlation-ID"
WORKER_SHUTDOWN_TIMEOUT_SECONDS = 10.0


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tags every request (and its log lines) with a correlation id, echoed back in the response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = cid
        return response


def _warn_on_missing_credentials(settings: Settings) -> None:
    if not settings.webhook_signing_secret:
        if settings.allow_unsigned_webhooks and settings.app_env != "production":
            logger.warning(
                "WEBHOOK_SIGNING_SECRET not set - gateway webhooks accepted unsigned (development only)"
            )
        else:
            logger.warning("WEBHOOK_SIGNING_SECRET not set - every gateway webhook will be rejected")
    if not settings.gateway_api_key:
        logger.warning("GATEWAY_API_KEY not set - dispatch will be rejected by the gateway")
    if settings.rate_limit_backend == "memory" and settings.app_env == "production":
        logger.warning("RATE_LIMIT_BACKEND=memory - campaign throughput is enforced per process only")


def _init_sentry(settings: Settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            traces_sample_rate=0.1,
            environment=settings.app_env,
        )
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


async def _stop_workers(tasks: list[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=WORKER_SHUTDOWN_TIMEOUT_SECONDS)
    if pending:
        logger.warning("%d worker(s) did not stop within %.0fs", len(pending), WORKER_SHUTDOWN_TIMEOUT_SECONDS)
        await asyncio.gather(*pending, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("textgate starting up (env=%s)", settings.app_env)
    _warn_on_missing_credentials(settings)
    _init_sentry(settings)

    from textgate.services.messaging import get_messaging_service
    from textgate.workers.reply_dispatch import run_reply_dispatch_worker
    from textgate.workers.webhook_retry import run_webhook_retry_worker
    service = get_messaging_service()
    workers = [
        asyncio.create_task(run_webhook_retry_worker(service.reconciler), name="webhook_retry"),
        asyncio.create_task(
            run_reply_dispatch_worker(service.keyword_processor), name="reply_dispatch",
        ),
    ]

    yield

    logger.info("textgate shutting down - stopping %d worker(s)", len(workers))
    await _stop_workers(workers)
    await service.close()

    from textgate.database import dispose_engine
    from textgate.utils.redis_client import close_redis
    await close_redis()
    await dispose_engine()
    logger.info("textgate shutdown complete")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="textgate",
        description="10DLC message compliance & delivery engine",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
