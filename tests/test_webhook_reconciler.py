"""
Webhook reconciler - signed gateway events applied exactly once, in any order.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update

from textgate.exceptions import WebhookVerificationError
from textgate.models.message import Message
from textgate.models.transition_anomaly import TransitionAnomaly
from textgate.models.webhook_event import WebhookEvent
from textgate.services.compliance_gate import SendCandidate
from textgate.services.webhook_reconciler import WebhookReconciler
from textgate.utils.webhook_signatures import compute_payload_hash

SENDER = "+12125550100"
RECIPIENT = "+12125559876"
FAR_FUTURE = datetime(2100, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def ingest(messaging, sign):
    async def _ingest(body: bytes, **sign_kwargs):
        headers = sign(body, **sign_kwargs)
        return await messaging.reconciler.ingest(
            body, headers["X-Gateway-Signature"], headers["X-Gateway-Timestamp"],
        )
    return _ingest


@pytest.fixture
def dispatched(messaging):
    async def _dispatched():
        outcome = await messaging.send(SendCandidate(
            sender=SENDER, recipient=RECIPIENT, body="Your order has shipped.", campaign_id="CMP_MIXED",
        ))
        return outcome.message
    return _dispatched


async def _events(session_factory) -> list[WebhookEvent]:
    async with session_factory() as session:
        result = await session.execute(select(WebhookEvent))
        return list(result.scalars().all())


class TestDeliveryEvents:
    @pytest.mark.asyncio
    async def test_delivered_before_sent(self, messaging, ingest, dispatched, webhook_body, session_factory):
        message = await dispatched()

        delivered = await ingest(webhook_body("evt-2", "delivered", message.external_id, cost_usd=0.0079))
        sent = await ingest(webhook_body("evt-1", "sent", message.external_id))

        assert delivered.status == "processed"
        assert delivered.transition.applied is True
        assert sent.status == "processed"
        assert sent.transition.applied is False

        stored = await messaging.get_message(message.id)
        assert stored.state == "delivered"
        assert stored.cost_usd == pytest.approx(0.0079)
        async with session_factory() as session:
            anomalies = (await session.execute(select(TransitionAnomaly))).scalars().all()
        assert [(a.current_state, a.attempted_state, a.event_id) for a in anomalies] == [
            ("delivered", "sent", "evt-1"),
        ]

    @pytest.mark.asyncio
    async def test_replay_is_duplicate(self, messaging, ingest, dispatched, webhook_body, session_factory):
        message = await dispatched()
        body = webhook_body("evt-2", "delivered", message.external_id)

        first = await ingest(body)
        replay = await ingest(body)

        assert first.status == "processed"
        assert replay.status == "duplicate"
        assert replay.ok
        events = await _events(session_factory)
        assert len(events) == 1
        assert events[0].processed is True
        assert events[0].processed_at is not None

    @pytest.mark.asyncio
    async def test_delivery_failed_records_error(self, messaging, ingest, dispatched, webhook_body):
        message = await dispatched()
        result = await ingest(webhook_body(
            "evt-f", "delivery_failed", message.external_id,
            error_code="30003", error_message="Unreachable destination handset",
        ))
        assert result.transition.applied
        stored = await messaging.get_message(message.id)
        assert stored.state == "failed"
        assert stored.error_code == "30003"

    @pytest.mark.asyncio
    async def test_unknown_event_type_ignored(self, ingest, webhook_body, session_factory):
        result = await ingest(webhook_body("evt-x", "message.finalized", "gw-1"))
        assert result.status == "ignored"
        assert (await _events(session_factory))[0].processing_status == "processed"


class TestVerification:
    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, ingest, webhook_body, session_factory):
        with patch("textgate.services.webhook_reconciler.send_alert", new_callable=AsyncMock) as alert:
            with pytest.raises(WebhookVerificationError, match="signature_mismatch"):
                await ingest(webhook_body("evt-1", "sent", "gw-1"), secret="wrong-secret")
        alert.assert_awaited_once()
        assert await _events(session_factory) == []

    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, ingest, webhook_body):
        stale = int(datetime.now(timezone.utc).timestamp()) - 3600
        with pytest.raises(WebhookVerificationError, match="stale_timestamp"):
            await ingest(webhook_body("evt-1", "sent", "gw-1"), timestamp=stale)

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, messaging, webhook_body):
        with pytest.raises(WebhookVerificationError, match="missing_signature"):
            await messaging.reconciler.ingest(webhook_body("evt-1", "sent", "gw-1"), None, None)

    @pytest.mark.asyncio
    async def test_unsigned_accepted_only_when_allowed(self, messaging, session_factory, webhook_policy, webhook_body):
        body = webhook_body("evt-u", "message.finalized")
        permissive = WebhookReconciler(
            messaging.tracker, messaging.keyword_processor, session_factory,
            signing_secret="", policy=webhook_policy, allow_unsigned=True,
        )
        assert (await permissive.ingest(body, None, None)).status == "ignored"

        strict = WebhookReconciler(
            messaging.tracker, messaging.keyword_processor, session_factory,
            signing_secret="", policy=webhook_policy, allow_unsigned=False,
        )
        with pytest.raises(WebhookVerificationError, match="missing_secret"):
            await strict.ingest(body, None, None)

    @pytest.mark.asyncio
    async def test_invalid_payload_kept_for_audit(self, ingest, session_factory):
        body = b'{"event_type": "sent"}'
        result = await ingest(body)
        assert result.status == "invalid_payload"
        assert result.ok is False

        events = await _events(session_factory)
        assert len(events) == 1
        assert events[0].processing_status == "invalid_payload"
        assert events[0].event_id == f"invalid:{compute_payload_hash(body)}"
        assert events[0].event_type == "sent"
        assert events[0].payload == {"event_type": "sent"}
        assert events[0].processed is False

        assert (await ingest(body)).status == "invalid_payload"
        assert len(await _events(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_non_json_payload_kept_raw(self, messaging, ingest, session_factory):
        assert (await ingest(b"not json")).status == "invalid_payload"
        event = (await _events(session_factory))[0]
        assert event.event_type == "unknown"
        assert event.payload == {"raw": "not json"}
        assert await messaging.reconciler.process_due(now=FAR_FUTURE) == []


class TestRetries:
    @pytest.mark.asyncio
    async def test_unknown_message_scheduled_for_retry(self, ingest, webhook_body, session_factory):
        before = datetime.now(timezone.utc)
        result = await ingest(webhook_body("evt-1", "delivered", "gw-late"))

        assert result.status == "retrying"
        assert "gw-late" in result.error
        assert timedelta(seconds=14) <= result.next_retry_at - before <= timedelta(seconds=16)
        event = (await _events(session_factory))[0]
        assert event.processing_status == "retrying"
        assert event.retry_count == 1
        assert event.processed is False

    @pytest.mark.asyncio
    async def test_retry_applies_once_message_exists(self, messaging, ingest, webhook_body, session_factory):
        await ingest(webhook_body("evt-1", "delivered", "gw-late"))
        assert await messaging.reconciler.process_due(now=datetime.now(timezone.utc)) == []

        message = Message(
            direction="outbound", sender=SENDER, recipient=RECIPIENT, body="hi",
            campaign_id="CMP_MIXED", state="dispatched", external_id="gw-late",
        )
        async with session_factory() as session:
            session.add(message)
            await session.commit()

        results = await messaging.reconciler.process_due(now=FAR_FUTURE)
        assert [r.status for r in results] == ["processed"]
        assert (await messaging.get_message(message.id)).state == "delivered"
        assert (await _events(session_factory))[0].processed is True

    @pytest.mark.asyncio
    async def test_dead_after_max_retries(self, messaging, ingest, webhook_body, session_factory):
        body = webhook_body("evt-ghost", "sent", "gw-ghost")
        assert (await ingest(body)).status == "retrying"

        with patch("textgate.services.webhook_reconciler.send_alert", new_callable=AsyncMock) as alert:
            for _ in range(4):
                results = await messaging.reconciler.process_due(now=FAR_FUTURE)
                assert [r.status for r in results] == ["retrying"]
            results = await messaging.reconciler.process_due(now=FAR_FUTURE)

        assert [r.status for r in results] == ["dead"]
        alert.assert_awaited_once()
        assert alert.call_args.args[0] == "webhook_event_dead"

        event = (await _events(session_factory))[0]
        assert event.processing_status == "dead"
        assert event.retry_count == 5
        assert event.next_retry_at is None
        assert await messaging.reconciler.process_due(now=FAR_FUTURE) == []
        assert (await ingest(body)).status == "dead"


class TestInbound:
    @pytest.mark.asyncio
    async def test_inbound_stop(self, messaging, ingest, webhook_body, fake_gateway):
        result = await ingest(webhook_body(
            "evt-in-1", "received", "gw-in-1", **{"from": RECIPIENT, "to": SENDER, "text": "stop"},
        ))
        assert result.status == "processed"
        assert result.keyword.action == "stop"
        assert await messaging.ledger.is_opted_out(RECIPIENT, campaign_id="CMP_MIXED")
        assert result.keyword.reply.state == "queued"
        assert fake_gateway.requests == []

    @pytest.mark.asyncio
    async def test_inbound_redelivered_under_new_event_id(self, messaging, ingest, webhook_body, fake_gateway, session_factory):
        fields = {"from": RECIPIENT, "to": SENDER, "text": "STOP"}
        await ingest(webhook_body("evt-in-1", "received", "gw-in-1", **fields))
        second = await ingest(webhook_body("evt-in-2", "received", "gw-in-1", **fields))

        assert second.status == "processed"
        assert second.keyword.duplicate is True
        async with session_factory() as session:
            inbound = (await session.execute(
                select(Message).where(Message.direction == "inbound")
            )).scalars().all()
        assert len(inbound) == 1
        assert inbound[0].external_id == "gw-in-1"
        assert len(await messaging.ledger.list_opt_outs(RECIPIENT)) == 1
        assert second.keyword.reply_pending is False
        assert await messaging.keyword_processor.dispatch_pending() == 1
        assert len(fake_gateway.requests) == 1

    @pytest.mark.asyncio
    async def test_inbound_without_from_is_retried(self, ingest, webhook_body):
        result = await ingest(webhook_body("evt-in-3", "received", "gw-in-3", text="hi"))
        assert result.status == "retrying"


async def _set_event(session_factory, event_id: str, **values) -> None:
    async with session_factory() as session:
        await session.execute(
            update(WebhookEvent).where(WebhookEvent.event_id == event_id).values(**values)
        )
        await session.commit()


async def _add_outbound(session_factory, external_id: str) -> Message:
    message = Message(
        direction="outbound", sender=SENDER, recipient=RECIPIENT, body="hi",
        campaign_id="CMP_MIXED", state="dispatched", external_id=external_id,
    )
    async with session_factory() as session:
        session.add(message)
        await session.commit()
    return message


class TestClaims:
    @pytest.mark.asyncio
    async def test_two_workers_process_due_event_once(self, messaging, ingest, webhook_body, session_factory, webhook_policy):
        await ingest(webhook_body("evt-1", "delivered", "gw-late"))
        await _add_outbound(session_factory, "gw-late")
        other = WebhookReconciler(
            messaging.tracker, messaging.keyword_processor, session_factory,
            signing_secret="unused", policy=webhook_policy,
        )

        first, second = await asyncio.gather(
            messaging.reconciler.process_due(now=FAR_FUTURE),
            other.process_due(now=FAR_FUTURE),
        )

        assert [r.status for r in first + second] == ["processed"]
        event = (await _events(session_factory))[0]
        assert event.processing_status == "processed"
        assert event.retry_count == 1
        assert event.claim_token is None

    @pytest.mark.asyncio
    async def test_abandoned_processing_row_reclaimed(self, messaging, ingest, webhook_body, session_factory):
        await ingest(webhook_body("evt-1", "delivered", "gw-late"))
        message = await _add_outbound(session_factory, "gw-late")
        await _set_event(
            session_factory, "evt-1",
            processing_status="processing",
            claim_token="crashed-worker",
            claimed_at=datetime.now(timezone.utc) - timedelta(hours=1),
            next_retry_at=FAR_FUTURE,
        )

        results = await messaging.reconciler.process_due()

        assert [r.status for r in results] == ["processed"]
        assert (await messaging.get_message(message.id)).state == "delivered"
        event = (await _events(session_factory))[0]
        assert event.processing_status == "processed"
        assert event.claim_token is None

    @pytest.mark.asyncio
    async def test_live_processing_row_left_alone(self, messaging, ingest, webhook_body, session_factory):
        body = webhook_body("evt-1", "delivered", "gw-late")
        await ingest(body)
        await _add_outbound(session_factory, "gw-late")
        await _set_event(
            session_factory, "evt-1",
            processing_status="processing",
            claim_token="busy-worker",
            claimed_at=datetime.now(timezone.utc),
        )

        assert await messaging.reconciler.process_due(now=FAR_FUTURE) == []
        redelivered = await ingest(body)
        assert redelivered.status == "in_progress"
        assert redelivered.ok
        assert (await _events(session_factory))[0].claim_token == "busy-worker"

    @pytest.mark.asyncio
    async def test_outcome_not_written_after_claim_lost(self, messaging, ingest, webhook_body, session_factory):
        await ingest(webhook_body("evt-1", "delivered", "gw-late"))
        await _add_outbound(session_factory, "gw-late")
        original = messaging.tracker.transition_by_external_id

        async def taken_over(*args, **kwargs):
            await _set_event(session_factory, "evt-1", claim_token="new-owner")
            return await original(*args, **kwargs)

        with patch.object(messaging.tracker, "transition_by_external_id", side_effect=taken_over):
            results = await messaging.reconciler.process_due(now=FAR_FUTURE)

        assert [r.status for r in results] == ["processed"]
        event = (await _events(session_factory))[0]
        assert event.processing_status == "processing"
        assert event.claim_token == "new-owner"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_request_does_not_strand_event(self, messaging, ingest, webhook_body, session_factory):
        entered = asyncio.Event()
        release = asyncio.Event()
        original = messaging.keyword_processor.process

        async def held_process(inbound):
            entered.set()
            await release.wait()
            return await original(inbound)

        body = webhook_body("evt-in-h", "received", "gw-in-h", **{"from": RECIPIENT, "to": SENDER, "text": "HELP"})
        with patch.object(messaging.keyword_processor, "process", side_effect=held_process):
            request = asyncio.create_task(ingest(body))
            await entered.wait()
            request.cancel()
            with pytest.raises(asyncio.CancelledError):
                await request

            release.set()
            await messaging.reconciler.drain()

        event = (await _events(session_factory))[0]
        assert event.processing_status == "processed"
        assert event.claim_token is None
        async with session_factory() as session:
            replies = (await session.execute(
                select(Message).where(Message.is_system_reply.is_(True))
            )).scalars().all()
        assert [r.state for r in replies] == ["queued"]
        assert (await ingest(body)).status == "duplicate"
