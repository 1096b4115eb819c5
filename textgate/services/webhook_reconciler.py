"""
Webhook reconciler - verify → record → apply for gateway delivery events.

1. Verify the HMAC-SHA256 signature over "{timestamp}.{body}" within the replay
   window. Failures raise WebhookVerificationError; nothing is stored.
2. Record the event by its provider event_id. An event already processed is a
   duplicate: success, no effect. A signed body that does not validate is kept
   as invalid_payload under its hash and never applied.
3. Claim it: a conditional UPDATE moves the row to "processing" with a claim
   token. Only the claimant applies the event, in any number of processes.
4. Apply it:
   sent / delivered / delivery_failed → state transition on the message with
       that external id (out-of-order events are discarded by the tracker)
   received → inbound Message (idempotent on the gateway id), then the
       keyword processor, which queues any reply for dispatch after the ack
5. Any processing exception is recorded on the event and a retry is scheduled
   with exponential backoff (next_retry_at). The retry worker claims due rows.
   After max_retries the event is marked dead and an operator alert fires.

Once verified, processing belongs to the reconciler, not to the HTTP request:
it runs in its own task and a cancelled caller does not interrupt it. A row
left in "processing" by a crashed worker is reclaimed after the lease.

Errors never reach the gateway's HTTP request; only verification failures do.
Every event row is kept for audit whether or not it was applied.
"""
import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from textgate.exceptions import WebhookProcessingError, WebhookVerificationError
from textgate.models.message import Message
from textgate.models.webhook_event import WebhookEvent
from textgate.schemas.webhooks import GatewayWebhookPayload
from textgate.services.delivery_tracker import (
    DeliveryStateTracker, TransitionResult, SENT, DELIVERED, FAILED, RECEIVED,
)
from textgate.services.keyword_processor import KeywordOutcome, KeywordProcessor
from textgate.utils.alerting import AlertType, send_alert
from textgate.utils.backoff import BackoffPolicy, webhook_policy
from textgate.utils.logging import correlation_scope, get_correlation_id
from textgate.utils.phone import mask_phone
from textgate.utils.segments import segment_info
from textgate.utils.webhook_signatures import compute_payload_hash, verify_signature

logger = logging.getLogger(__name__)

EVENT_TARGETS = {
    "sent": SENT,
    "delivered": DELIVERED,
    "delivery_failed": FAILED,
}
INBOUND_EVENT = "received"

STATUS_RECEIVED = "received"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_RETRYING = "retrying"
STATUS_DEAD = "dead"
STATUS_INVALID = "invalid_payload"


class IngestResult:
    """Outcome of ingesting or re-processing one event."""

    def __init__(
        self,
        status: str,
        event_id: Optional[str] = None,
        transition: Optional[TransitionResult] = None,
        keyword: Optional[KeywordOutcome] = None,
        error: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
    ):
        # processed, duplicate, in_progress, retrying, dead, ignored, invalid_payload
        self.status = status
        self.event_id = event_id
        self.transition = transition
        self.keyword = keyword
        self.error = error
        self.next_retry_at = next_retry_at

    @property
    def ok(self) -> bool:
        return self.status in ("processed", "duplicate", "in_progress", "ignored")

    def __repr__(self) -> str:
        return f"<IngestResult {self.status} event={self.event_id}>"


class WebhookReconciler:

    def __init__(
        self,
        tracker: DeliveryStateTracker,
        keyword_processor: KeywordProcessor,
        session_factory: Optional[async_sessionmaker] = None,
        signing_secret: Optional[str] = None,
        tolerance_seconds: Optional[int] = None,
        policy: Optional[BackoffPolicy] = None,
        clock: Callable[[], float] = time.time,
        allow_unsigned: Optional[bool] = None,
        processing_lease_seconds: Optional[int] = None,
    ) -> None:
        from textgate.config import get_settings
        settings = get_settings()
        if session_factory is None:
            from textgate.database import get_session_factory
            session_factory = get_session_factory()
        self.tracker = tracker
        self.keyword_processor = keyword_processor
        self._session_factory = session_factory
        self._secret = settings.webhook_signing_secret if signing_secret is None else signing_secret
        self._tolerance = (
            settings.webhook_tolerance_seconds if tolerance_seconds is None else tolerance_seconds
        )
        if allow_unsigned is None:
            allow_unsigned = settings.allow_unsigned_webhooks and settings.app_env != "production"
        self._allow_unsigned = allow_unsigned
        if processing_lease_seconds is None:
            processing_lease_seconds = settings.webhook_processing_lease_seconds
        self.processing_lease = timedelta(seconds=processing_lease_seconds)
        self.policy = policy or webhook_policy()
        self._clock = clock
        self._inflight: set[asyncio.Task] = set()

    # -- Ingress ---------------------------------------------------------

    async def ingest(
        self,
        raw_body: bytes,
        signature: Optional[str],
        timestamp: Optional[str],
    ) -> IngestResult:
        await self.verify(raw_body, signature, timestamp)

        try:
            payload = GatewayWebhookPayload.model_validate_json(raw_body)
        except ValidationError as e:
            logger.error("Invalid gateway webhook payload: %s", str(e)[:500])
            await self._record_invalid(raw_body, e)
            return IngestResult(STATUS_INVALID, error=str(e)[:500])

        return await self._system_owned(self._ingest_verified(payload, raw_body))

    async def verify(
        self,
        raw_body: bytes,
        signature: Optional[str],
        timestamp: Optional[str],
    ) -> None:
        if not self._secret and self._allow_unsigned:
            logger.warning(
                "WEBHOOK_SIGNING_SECRET not set - accepting gateway webhook without verification"
            )
            return

        valid, reason = verify_signature(
            self._secret, signature, timestamp, raw_body,
            tolerance_seconds=self._tolerance, now=self._clock(),
        )
        if valid:
            return

        logger.warning(
            "Gateway webhook rejected: %s (hash=%s)", reason, compute_payload_hash(raw_body)[:16],
        )
        await send_alert(
            AlertType.WEBHOOK_SIGNATURE_INVALID,
            f"Gateway webhook failed verification: {reason}",
            severity="warning",
        )
        raise WebhookVerificationError(reason)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for event processing that outlived its request (shutdown, tests)."""
        if self._inflight:
            await asyncio.wait(set(self._inflight), timeout=timeout)

    # -- Retry path ------------------------------------------------------

    async def process_due(self, limit: int = 25, now: Optional[datetime] = None) -> list[IngestResult]:
        """
        Claim and re-process events whose next_retry_at is at or before now,
        plus rows stuck in "processing" past the lease (measured on the wall
        clock). Rows claimed by another worker are skipped.
        """
        now = now or datetime.now(timezone.utc)
        due = or_(
            and_(
                WebhookEvent.processing_status == STATUS_RETRYING,
                WebhookEvent.next_retry_at <= now,
            ),
            self._stale_processing(datetime.now(timezone.utc)),
        )
        token = uuid.uuid4().hex

        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent.id)
                .where(due)
                .order_by(WebhookEvent.received_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            candidates = list(result.scalars().all())
            if not candidates:
                return []
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id.in_(candidates), due)
                .values(
                    processing_status=STATUS_PROCESSING,
                    claimed_at=datetime.now(timezone.utc),
                    claim_token=token,
                )
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(
                select(WebhookEvent)
                .where(WebhookEvent.claim_token == token)
                .order_by(WebhookEvent.received_at)
            )
            claimed = list(result.scalars().all())
            await session.commit()

        results = []
        for event in claimed:
            payload = GatewayWebhookPayload.model_validate(event.payload)
            with correlation_scope(event.correlation_id):
                results.append(await self._system_owned(self._process(event.id, payload, token)))
        return results

    # -- Internals -------------------------------------------------------

    async def _system_owned(self, coro: Awaitable[IngestResult]) -> IngestResult:
        """Run processing in its own task; cancelling the caller leaves it running to completion."""
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._task_done)
        return await asyncio.shield(task)

    def _task_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Webhook processing task failed: %s", task.exception())

    async def _ingest_verified(self, payload: GatewayWebhookPayload, raw_body: bytes) -> IngestResult:
        event_pk, status = await self._record(payload, raw_body)
        if status == STATUS_PROCESSED:
            logger.info(
                "Duplicate webhook event %s ignored", payload.event_id,
                extra={"event_id": payload.event_id},
            )
            return IngestResult("duplicate", payload.event_id)
        if status == STATUS_DEAD:
            logger.warning(
                "Redelivery of dead webhook event %s ignored", payload.event_id,
                extra={"event_id": payload.event_id},
            )
            return IngestResult("dead", payload.event_id)

        token = await self._claim(event_pk)
        if token is None:
            logger.info(
                "Webhook event %s is being processed by another worker", payload.event_id,
                extra={"event_id": payload.event_id},
            )
            return IngestResult("in_progress", payload.event_id)
        return await self._process(event_pk, payload, token)

    def _stale_processing(self, now: datetime):
        return and_(
            WebhookEvent.processing_status == STATUS_PROCESSING,
            or_(
                WebhookEvent.claimed_at.is_(None),
                WebhookEvent.claimed_at < now - self.processing_lease,
            ),
        )

    async def _claim(self, event_pk: uuid.UUID) -> Optional[str]:
        """received/retrying (or abandoned processing) → processing. Returns the claim token if won."""
        now = datetime.now(timezone.utc)
        token = uuid.uuid4().hex
        async with self._session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(
                    WebhookEvent.id == event_pk,
                    or_(
                        WebhookEvent.processing_status.in_((STATUS_RECEIVED, STATUS_RETRYING)),
                        self._stale_processing(now),
                    ),
                )
                .values(processing_status=STATUS_PROCESSING, claimed_at=now, claim_token=token)
                .execution_options(synchronize_session=False)
            )
            won = result.rowcount == 1
            await session.commit()
        return token if won else None

    async def _release(self, event_pk: uuid.UUID, token: str, **values) -> bool:
        """Write the outcome and drop the claim, only if the claim is still ours."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_pk, WebhookEvent.claim_token == token)
                .values(claim_token=None, claimed_at=None, **values)
                .execution_options(synchronize_session=False)
            )
            kept = result.rowcount == 1
            await session.commit()
        if not kept:
            logger.warning(
                "Claim on webhook event row %s lost before its outcome was written", event_pk,
            )
        return kept

    async def _record(
        self, payload: GatewayWebhookPayload, raw_body: bytes,
    ) -> tuple[uuid.UUID, str]:
        """Look up or create the audit row. Returns (row id, processing_status)."""
        existing = await self._find(payload.event_id)
        if existing is not None:
            return existing

        event = WebhookEvent(
            event_id=payload.event_id,
            event_type=payload.event_type,
            resource_id=payload.resource_id,
            payload=json.loads(raw_body),
            payload_hash=compute_payload_hash(raw_body),
            occurred_at=payload.occurred_at,
            processing_status=STATUS_RECEIVED,
            processed=False,
            retry_count=0,
            max_retries=self.policy.max_retries,
            correlation_id=get_correlation_id(),
        )
        lost_race = False
        async with self._session_factory() as session:
            session.add(event)
            try:
                await session.commit()
            except IntegrityError:
                # Same event stored concurrently by another worker
                await session.rollback()
                lost_race = True

        if lost_race:
            existing = await self._find(payload.event_id)
            if existing is None:
                raise WebhookProcessingError(f"Event {payload.event_id} conflicted but is missing")
            return existing
        return event.id, STATUS_RECEIVED

    async def _record_invalid(self, raw_body: bytes, error: ValidationError) -> None:
        """Keep a signed body that failed validation, once per distinct body."""
        payload_hash = compute_payload_hash(raw_body)
        try:
            document = json.loads(raw_body)
        except ValueError:
            document = None
        if not isinstance(document, dict):
            document = {"raw": raw_body.decode("utf-8", errors="replace")[:10000]}
        event_type = document.get("event_type")
        if not isinstance(event_type, str) or not event_type:
            event_type = "unknown"

        event = WebhookEvent(
            event_id=f"invalid:{payload_hash}",
            event_type=event_type[:50],
            payload=document,
            payload_hash=payload_hash,
            processing_status=STATUS_INVALID,
            processed=False,
            retry_count=0,
            max_retries=0,
            error_message=str(error)[:2000],
            correlation_id=get_correlation_id(),
        )
        async with self._session_factory() as session:
            session.add(event)
            try:
                await session.commit()
            except IntegrityError:
                # Same body already kept
                await session.rollback()

    async def _find(self, event_id: str) -> Optional[tuple[uuid.UUID, str]]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEvent.id, WebhookEvent.processing_status)
                .where(WebhookEvent.event_id == event_id)
            )
            row = result.first()
        if row is None:
            return None
        return row[0], row[1]

    async def _process(
        self, event_pk: uuid.UUID, payload: GatewayWebhookPayload, token: str,
    ) -> IngestResult:
        try:
            transition, keyword = await self._apply(payload)
        except Exception as e:
            return await self._schedule_retry(event_pk, payload, e, token)

        await self._release(
            event_pk,
            token,
            processing_status=STATUS_PROCESSED,
            processed=True,
            processed_at=datetime.now(timezone.utc),
            next_retry_at=None,
            error_message=None,
        )
        status = "processed"
        if transition is None and keyword is None:
            status = "ignored"
        return IngestResult(status, payload.event_id, transition=transition, keyword=keyword)

    async def _apply(
        self, payload: GatewayWebhookPayload,
    ) -> tuple[Optional[TransitionResult], Optional[KeywordOutcome]]:
        target = EVENT_TARGETS.get(payload.event_type)
        if target is not None:
            if not payload.resource_id:
                raise WebhookProcessingError(f"{payload.event_type} event without resource_id")
            fields = {}
            if target == FAILED:
                fields["error_code"] = payload.error_code or "delivery_failed"
                fields["error_message"] = payload.error_message
            if payload.cost_usd is not None:
                fields["cost_usd"] = payload.cost_usd
            if payload.segment_count is not None:
                fields["segment_count"] = payload.segment_count
            transition = await self.tracker.transition_by_external_id(
                payload.resource_id, target, source="webhook",
                event_id=payload.event_id, **fields,
            )
            return transition, None

        if payload.event_type == INBOUND_EVENT:
            inbound = await self._store_inbound(payload)
            outcome = await self.keyword_processor.process(inbound)
            return None, outcome

        logger.info(
            "Unhandled webhook event type %s (%s)", payload.event_type, payload.event_id,
            extra={"event_id": payload.event_id},
        )
        return None, None

    async def _store_inbound(self, payload: GatewayWebhookPayload) -> Message:
        """Create the inbound message once per gateway message id."""
        if not payload.from_ or not payload.to:
            raise WebhookProcessingError(f"received event {payload.event_id} without from/to")
        external_id = payload.resource_id or payload.event_id

        existing = await self.tracker.get_by_external_id(external_id)
        if existing is not None:
            return existing

        body = payload.text or ""
        segment_count, encoding = segment_info(body)
        inbound = Message(
            external_id=external_id,
            direction="inbound",
            sender=payload.from_,
            recipient=payload.to,
            body=body,
            media_urls=list(payload.media_urls),
            segment_count=payload.segment_count or segment_count,
            encoding=encoding,
            cost_usd=payload.cost_usd,
            state=RECEIVED,
        )
        lost_race = False
        async with self._session_factory() as session:
            session.add(inbound)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                lost_race = True

        if lost_race:
            existing = await self.tracker.get_by_external_id(external_id)
            if existing is None:
                raise WebhookProcessingError(f"Inbound {external_id} conflicted but is missing")
            return existing

        logger.info(
            "Inbound message from %s to %s stored", mask_phone(inbound.sender), inbound.recipient,
            extra={"message_id": str(inbound.id), "external_id": external_id},
        )
        return inbound

    async def _schedule_retry(
        self, event_pk: uuid.UUID, payload: GatewayWebhookPayload, error: Exception, token: str,
    ) -> IngestResult:
        async with self._session_factory() as session:
            event = await session.get(WebhookEvent, event_pk)
            retry_count = event.retry_count
            max_retries = event.max_retries
        error_message = f"{error.__class__.__name__}: {error}"[:2000]

        if retry_count >= max_retries:
            await self._release(
                event_pk,
                token,
                processing_status=STATUS_DEAD,
                error_message=error_message,
                next_retry_at=None,
            )
            logger.error(
                "Webhook event %s dead after %d retries: %s",
                payload.event_id, retry_count, error_message,
                extra={"event_id": payload.event_id},
            )
            await send_alert(
                AlertType.WEBHOOK_EVENT_DEAD,
                f"Webhook event {payload.event_id} ({payload.event_type}) failed permanently: {error_message}",
                severity="critical",
                extra={"event_id": payload.event_id, "resource_id": payload.resource_id},
                subject=payload.event_id,
            )
            return IngestResult("dead", payload.event_id, error=error_message)

        next_retry_at = self.policy.with_max_retries(max_retries).next_retry_at(retry_count)
        # Guarded by the claim token, so no other worker moves retry_count meanwhile
        await self._release(
            event_pk,
            token,
            processing_status=STATUS_RETRYING,
            error_message=error_message,
            retry_count=WebhookEvent.retry_count + 1,
            next_retry_at=next_retry_at,
        )
        logger.warning(
            "Webhook event %s failed (retry %d/%d at %s): %s",
            payload.event_id, retry_count + 1, max_retries,
            next_retry_at.isoformat() if next_retry_at else "-", error_message,
            extra={"event_id": payload.event_id},
        )
        return IngestResult(
            "retrying", payload.event_id, error=error_message, next_retry_at=next_retry_at,
        )
