"""
Dispatcher - hands gate-approved messages to the upstream gateway.

enqueue() persists the Message in state "queued" (segments and encoding
computed) before any network call. send() then calls the gateway once per
attempt:
- success          → external id stored, state "dispatched"
- 4xx              → no retry, state "failed" with the gateway's error, DispatchRejected
- timeout/conn/5xx → retried with exponential backoff + jitter, up to
                     dispatch_max_retries retries; then "failed", DispatchFailed

Idempotency: before the first gateway call the message row is claimed with a
conditional UPDATE (queued, no external id, no live claim). Only the process
that wins the claim talks to the gateway; anyone else gets DispatchInProgress,
or the external id once it exists. A claim older than the lease belongs to a
crashed process and can be taken over.

Cancelling the caller stops retrying during backoff: the message is marked
failed with dispatch_cancelled and CancelledError propagates. An attempt that
is already in flight is not abandoned; its outcome is recorded first, so a
message the gateway accepted always keeps its external id.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from textgate.exceptions import (
    DispatchFailed,
    DispatchInProgress,
    DispatchRejected,
    GatewayRejectedError,
    GatewayTransientError,
    MessageNotFound,
)
from textgate.models.message import Message
from textgate.services.delivery_tracker import DeliveryStateTracker, QUEUED
from textgate.services.gateway import GatewayClient
from textgate.utils.alerting import AlertType, send_alert
from textgate.utils.backoff import BackoffPolicy, dispatch_policy
from textgate.utils.phone import mask_phone
from textgate.utils.segments import segment_info

logger = logging.getLogger(__name__)

ERROR_DISPATCH_FAILED = "dispatch_failed"
ERROR_DISPATCH_CANCELLED = "dispatch_cancelled"


async def _finish(coro: Awaitable):
    """Run a bookkeeping write to completion even if the caller is cancelled."""
    task = asyncio.ensure_future(coro)
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait([task])
        raise


class Dispatcher:

    def __init__(
        self,
        gateway: GatewayClient,
        tracker: DeliveryStateTracker,
        session_factory: Optional[async_sessionmaker] = None,
        policy: Optional[BackoffPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        claim_lease_seconds: Optional[int] = None,
    ) -> None:
        if session_factory is None:
            from textgate.database import get_session_factory
            session_factory = get_session_factory()
        if claim_lease_seconds is None:
            from textgate.config import get_settings
            claim_lease_seconds = get_settings().dispatch_claim_lease_seconds
        self.gateway = gateway
        self.tracker = tracker
        self._session_factory = session_factory
        self.policy = policy or dispatch_policy()
        self._sleep = sleep
        self.claim_lease = timedelta(seconds=claim_lease_seconds)

    def build(
        self,
        sender: str,
        recipient: str,
        body: str,
        media_urls: Optional[list[str]] = None,
        campaign_id: Optional[str] = None,
        is_system_reply: bool = False,
        inbound_message_id: Optional[uuid.UUID] = None,
    ) -> Message:
        """An unsaved outbound message in state "queued", for callers that persist it in their own transaction."""
        segment_count, encoding = segment_info(body or "")
        return Message(
            id=uuid.uuid4(),
            direction="outbound",
            sender=sender,
            recipient=recipient,
            body=body or "",
            media_urls=list(media_urls or []),
            campaign_id=campaign_id,
            segment_count=segment_count,
            encoding=encoding,
            state=QUEUED,
            attempt_count=0,
            is_system_reply=is_system_reply,
            inbound_message_id=inbound_message_id,
        )

    async def enqueue(self, sender: str, recipient: str, body: str, **fields) -> Message:
        """Persist an outbound message in state "queued"."""
        message = self.build(sender, recipient, body, **fields)
        async with self._session_factory() as session:
            session.add(message)
            await session.commit()
        logger.info(
            "Message queued to %s (%d segments, %s)",
            mask_phone(recipient), message.segment_count, message.encoding,
            extra={"message_id": str(message.id), "campaign_id": message.campaign_id, "state": QUEUED},
        )
        return message

    def claim_is_stale(self, now: Optional[datetime] = None):
        """Filter for queued messages nobody is dispatching (no claim, or an expired one)."""
        cutoff = (now or datetime.now(timezone.utc)) - self.claim_lease
        return or_(Message.dispatch_claimed_at.is_(None), Message.dispatch_claimed_at < cutoff)

    async def send(self, message_id: uuid.UUID) -> str:
        """Dispatch a queued message. Returns the gateway's external id."""
        message = await self.tracker.get(message_id)
        if message is None:
            raise MessageNotFound(str(message_id))
        if message.external_id:
            logger.info(
                "Message %s already dispatched as %s", message_id, message.external_id,
                extra={"message_id": str(message_id), "external_id": message.external_id},
            )
            return message.external_id
        if message.state != QUEUED:
            raise DispatchRejected(
                message_id, "invalid_state", f"Message is {message.state}, not queued",
            )

        if not await self._claim(message_id):
            current = await self.tracker.get(message_id)
            if current is not None and current.external_id:
                return current.external_id
            if current is not None and current.state != QUEUED:
                raise DispatchRejected(
                    message_id, "invalid_state", f"Message is {current.state}, not queued",
                )
            raise DispatchInProgress(message_id)

        return await self._send(message)

    async def _claim(self, message_id: uuid.UUID) -> bool:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            result = await session.execute(
                update(Message)
                .where(
                    Message.id == message_id,
                    Message.state == QUEUED,
                    Message.external_id.is_(None),
                    self.claim_is_stale(now),
                )
                .values(dispatch_claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1
            await session.commit()
        return claimed

    async def _send(self, message: Message) -> str:
        message_id = message.id
        masked = mask_phone(message.recipient)
        attempt = 0
        last_error = ""
        while True:
            attempt += 1
            call = asyncio.ensure_future(self.gateway.send_message(
                message.sender, message.recipient, message.body, message.media_urls,
            ))
            try:
                external_id = await asyncio.shield(call)
            except asyncio.CancelledError:
                await self._settle_cancelled_attempt(message_id, call, attempt)
                raise
            except GatewayRejectedError as e:
                logger.warning(
                    "Gateway rejected message to %s: status=%d code=%s",
                    masked, e.status_code, e.error_code,
                    extra={"message_id": str(message_id), "error_code": e.error_code},
                )
                await _finish(self.tracker.mark_failed(
                    message_id,
                    e.error_code or str(e.status_code),
                    e.error_message,
                    attempt_count=attempt,
                ))
                raise DispatchRejected(message_id, e.error_code, e.error_message)
            except GatewayTransientError as e:
                last_error = str(e)
                if attempt > self.policy.max_retries:
                    break
                delay = self.policy.delay(attempt - 1)
                logger.warning(
                    "Gateway transient error for %s (attempt %d/%d): %s. Retrying in %.2fs",
                    masked, attempt, self.policy.max_retries + 1, last_error, delay,
                    extra={"message_id": str(message_id)},
                )
                try:
                    await self._sleep(delay)
                except asyncio.CancelledError:
                    logger.warning(
                        "Dispatch of %s cancelled after %d attempt(s)", message_id, attempt,
                        extra={"message_id": str(message_id)},
                    )
                    await _finish(self.tracker.mark_failed(
                        message_id, ERROR_DISPATCH_CANCELLED, "Dispatch cancelled by caller",
                        attempt_count=attempt,
                    ))
                    raise
                continue

            await _finish(self.tracker.mark_dispatched(message_id, external_id, attempt_count=attempt))
            return external_id

        await _finish(self.tracker.mark_failed(
            message_id, ERROR_DISPATCH_FAILED, last_error, attempt_count=attempt,
        ))
        await send_alert(
            AlertType.DISPATCH_FAILED,
            f"Dispatch to {mask_phone(message.recipient)} failed after {attempt} attempts: {last_error}",
            extra={"message_id": str(message_id)},
        )
        raise DispatchFailed(message_id, last_error)

    async def _settle_cancelled_attempt(
        self, message_id: uuid.UUID, call: asyncio.Future, attempt: int,
    ) -> None:
        """The caller was cancelled mid-call: wait for the gateway's answer and record it."""
        await asyncio.wait([call])
        error = None if call.cancelled() else call.exception()
        if not call.cancelled() and error is None:
            external_id = call.result()
            logger.warning(
                "Dispatch of %s cancelled after the gateway accepted it as %s",
                message_id, external_id,
                extra={"message_id": str(message_id), "external_id": external_id},
            )
            await _finish(self.tracker.mark_dispatched(message_id, external_id, attempt_count=attempt))
            return

        if isinstance(error, GatewayRejectedError):
            error_code, error_message = error.error_code or str(error.status_code), error.error_message
        else:
            error_code, error_message = ERROR_DISPATCH_CANCELLED, "Dispatch cancelled by caller"
        logger.warning(
            "Dispatch of %s cancelled during attempt %d", message_id, attempt,
            extra={"message_id": str(message_id)},
        )
        await _finish(self.tracker.mark_failed(
            message_id, error_code, error_message, attempt_count=attempt,
        ))
