"""
Keyword processor - STOP/HELP/START replies from subscribers.
The subscriber is RECIPIENT; our sending number is SENDER (assigned to CMP_MIXED).
"""
import asyncio
from datetime import datetime, timezone

import httpx
import pytest
from sqlalchemy import select, update

from textgate.config import get_settings
from textgate.models.message import Message
from textgate.services.compliance_gate import SendCandidate
from textgate.services.keyword_processor import KeywordAction, classify

SENDER = "+12125550100"
RECIPIENT = "+12125559876"


@pytest.fixture
def inbound(session_factory):
    async def _inbound(body: str, to: str = SENDER, external_id: str = None) -> Message:
        message = Message(
            external_id=external_id,
            direction="inbound",
            sender=RECIPIENT,
            recipient=to,
            body=body,
            state="received",
        )
        async with session_factory() as session:
            session.add(message)
            await session.commit()
        return message
    return _inbound


async def _replies(session_factory, inbound_id) -> list[Message]:
    async with session_factory() as session:
        result = await session.execute(
            select(Message).where(Message.inbound_message_id == inbound_id)
        )
        return list(result.scalars().all())


class TestClassify:
    @pytest.mark.parametrize("body,action", [
        ("STOP", KeywordAction.STOP),
        ("  stop \n", KeywordAction.STOP),
        ("Unsubscribe", KeywordAction.STOP),
        ("quit", KeywordAction.STOP),
        ("help", KeywordAction.HELP),
        ("INFO", KeywordAction.HELP),
        ("start", KeywordAction.START),
        ("Yes", KeywordAction.START),
        ("Please stop by tomorrow", KeywordAction.NONE),
        ("STOP!", KeywordAction.NONE),
        ("", KeywordAction.NONE),
        (None, KeywordAction.NONE),
    ])
    def test_exact_match_only(self, body, action):
        assert classify(body) == action


class TestStop:
    @pytest.mark.asyncio
    async def test_lowercase_stop_opts_out_and_confirms(self, messaging, inbound, fake_gateway):
        message = await inbound("stop")

        outcome = await messaging.keyword_processor.process(message)

        assert outcome.action == KeywordAction.STOP
        assert outcome.opt_out_created is True
        assert outcome.opt_out.scope_type == "campaign"
        assert outcome.opt_out.scope_id == "CMP_MIXED"
        assert outcome.opt_out.method == "reply_keyword"
        assert outcome.reply_pending
        assert fake_gateway.requests == []

        assert await messaging.keyword_processor.dispatch_reply(outcome.reply.id) == "gw-msg-1"
        assert len(fake_gateway.requests) == 1
        payload = fake_gateway.payloads[0]
        assert payload["to"] == RECIPIENT
        assert payload["from"] == SENDER
        assert payload["text"] == get_settings().stop_confirmation_text

    @pytest.mark.asyncio
    async def test_later_campaign_send_denied(self, messaging, inbound):
        await messaging.keyword_processor.process(await inbound("STOP"))
        decision = await messaging.gate.evaluate(SendCandidate(
            sender=SENDER, recipient=RECIPIENT, body="Your order has shipped.", campaign_id="CMP_MIXED",
        ))
        assert decision.reasons == ["opted_out"]

    @pytest.mark.asyncio
    async def test_scope_follows_latest_outbound_campaign(self, messaging, inbound, session_factory):
        async with session_factory() as session:
            session.add(Message(
                direction="outbound", sender=SENDER, recipient=RECIPIENT,
                body="Sale! Reply STOP to opt out", campaign_id="CMP_PROMO", state="delivered",
            ))
            await session.commit()

        outcome = await messaging.keyword_processor.process(await inbound("STOP"))
        assert outcome.opt_out.scope_id == "CMP_PROMO"

    @pytest.mark.asyncio
    async def test_unassigned_number_opts_out_globally(self, messaging, inbound):
        outcome = await messaging.keyword_processor.process(await inbound("STOP", to="+12125550199"))
        assert outcome.opt_out.scope_type == "global"

    @pytest.mark.asyncio
    async def test_confirmation_bypasses_existing_opt_out(self, messaging, inbound, fake_gateway):
        await messaging.ledger.record_opt_out(RECIPIENT, "global")
        outcome = await messaging.keyword_processor.process(await inbound("STOP"))
        assert outcome.reply_decision.allowed
        assert outcome.reply_pending
        await messaging.keyword_processor.dispatch_reply(outcome.reply.id)
        assert len(fake_gateway.requests) == 1

    @pytest.mark.asyncio
    async def test_concurrent_processing_is_idempotent(self, messaging, inbound, session_factory, fake_gateway):
        message = await inbound("STOP")

        outcomes = await asyncio.gather(
            *(messaging.keyword_processor.process(message) for _ in range(3))
        )

        assert sum(1 for o in outcomes if o.opt_out_created) == 1
        assert sum(1 for o in outcomes if not o.duplicate) == 1
        assert len(await messaging.ledger.list_opt_outs(RECIPIENT)) == 1
        assert len(await _replies(session_factory, message.id)) == 1
        assert fake_gateway.requests == []
        assert await messaging.keyword_processor.dispatch_pending() == 1
        assert len(fake_gateway.requests) == 1

    @pytest.mark.asyncio
    async def test_reprocessing_queues_no_second_reply(self, messaging, inbound, session_factory):
        message = await inbound("STOP")
        await messaging.keyword_processor.process(message)
        outcome = await messaging.keyword_processor.process(message)
        assert outcome.duplicate is True
        assert outcome.opt_out_created is False
        assert outcome.reply_pending is False
        assert len(await _replies(session_factory, message.id)) == 1


class TestHelpAndStart:
    @pytest.mark.asyncio
    async def test_help_reply(self, messaging, inbound, fake_gateway, session_factory):
        message = await inbound("Help")
        outcome = await messaging.keyword_processor.process(message)

        assert outcome.action == KeywordAction.HELP
        assert outcome.opt_out is None
        await messaging.keyword_processor.dispatch_reply(outcome.reply.id)
        assert fake_gateway.payloads[0]["text"] == get_settings().help_reply_text
        replies = await _replies(session_factory, message.id)
        assert replies[0].is_system_reply is True
        assert replies[0].campaign_id is None
        assert replies[0].state == "dispatched"

    @pytest.mark.asyncio
    async def test_help_reply_respects_opt_out(self, messaging, inbound, fake_gateway):
        await messaging.ledger.record_opt_out(RECIPIENT, "global")
        outcome = await messaging.keyword_processor.process(await inbound("HELP"))
        assert outcome.reply is None
        assert outcome.reply_decision.reasons == ["opted_out"]
        assert fake_gateway.requests == []

    @pytest.mark.asyncio
    async def test_start_changes_nothing(self, messaging, inbound, fake_gateway, session_factory):
        await messaging.ledger.record_opt_out(RECIPIENT, "campaign", "CMP_MIXED")
        message = await inbound("START")

        outcome = await messaging.keyword_processor.process(message)

        assert outcome.action == KeywordAction.START
        assert await messaging.ledger.is_opted_out(RECIPIENT, campaign_id="CMP_MIXED")
        assert fake_gateway.requests == []
        async with session_factory() as session:
            stored = await session.get(Message, message.id)
        assert stored.keyword_action == "start"

    @pytest.mark.asyncio
    async def test_conversation_is_stored_without_action(self, messaging, inbound, fake_gateway, session_factory):
        message = await inbound("Please stop by tomorrow")
        outcome = await messaging.keyword_processor.process(message)
        assert outcome.action == KeywordAction.NONE
        assert await messaging.ledger.list_opt_outs(RECIPIENT) == []
        assert fake_gateway.requests == []
        async with session_factory() as session:
            stored = await session.get(Message, message.id)
        assert stored.keyword_action == "none"


class TestReplyDispatch:
    @pytest.mark.asyncio
    async def test_process_never_calls_gateway(self, messaging, inbound, fake_gateway, session_factory):
        message = await inbound("HELP")
        await messaging.keyword_processor.process(message)
        assert fake_gateway.requests == []
        assert [r.state for r in await _replies(session_factory, message.id)] == ["queued"]

    @pytest.mark.asyncio
    async def test_pending_skips_replies_being_dispatched(self, messaging, inbound, fake_gateway, session_factory):
        first = await messaging.keyword_processor.process(await inbound("HELP", external_id="gw-in-1"))
        second = await messaging.keyword_processor.process(await inbound("INFO", external_id="gw-in-2"))
        async with session_factory() as session:
            await session.execute(
                update(Message)
                .where(Message.id == first.reply.id)
                .values(dispatch_claimed_at=datetime.now(timezone.utc))
            )
            await session.commit()

        assert await messaging.keyword_processor.dispatch_pending() == 1
        assert len(fake_gateway.requests) == 1
        assert (await messaging.get_message(second.reply.id)).state == "dispatched"
        assert (await messaging.get_message(first.reply.id)).state == "queued"

    @pytest.mark.asyncio
    async def test_failed_reply_recorded_not_raised(self, messaging, inbound, fake_gateway):
        fake_gateway.push(httpx.Response(400, json={"errors": [{"code": "40300", "detail": "Invalid destination"}]}))
        outcome = await messaging.keyword_processor.process(await inbound("HELP"))

        assert await messaging.keyword_processor.dispatch_reply(outcome.reply.id) is None
        stored = await messaging.get_message(outcome.reply.id)
        assert stored.state == "failed"
        assert stored.error_code == "40300"
        assert await messaging.keyword_processor.dispatch_pending() == 0
