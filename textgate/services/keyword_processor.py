"""
Inbound keyword processor - STOP/HELP/START handling for inbound replies.

Matching is exact on the whole trimmed, uppercased body. "Please stop by
tomorrow" is ordinary conversation, not an opt-out.

- STOP family  → OptOutRecord scoped to the campaign behind the number the
                 recipient texted, then a confirmation reply that bypasses the
                 opt-out check (content and time window still apply)
- HELP family  → fixed help-text reply through the normal gate
- START family → logged as a resubscription request; opt-out records are
                 immutable, so nothing is changed here
- anything else → stored, no action

process() never talks to the gateway. It records the opt-out and leaves the
reply queued; dispatch_reply() and dispatch_pending() send it afterwards, so a
webhook is acknowledged without waiting on the carrier.

Processing one inbound message is idempotent across processes: the opt-out is
keyed by the ledger's unique scope, and the reply is inserted in the same
transaction that claims the inbound row (keyword_action NULL → action). Only
the claimant enqueues a reply.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from textgate.exceptions import DispatchFailed, DispatchInProgress, DispatchRejected
from textgate.models.message import Message
from textgate.models.opt_out import OptOutRecord
from textgate.services.compliance_gate import ComplianceDecision, ComplianceGate, SendCandidate
from textgate.services.dispatcher import Dispatcher
from textgate.services.opt_out_ledger import OptOutLedger, SCOPE_CAMPAIGN, SCOPE_GLOBAL
from textgate.services.registry import CampaignRegistry
from textgate.services.delivery_tracker import QUEUED
from textgate.utils.phone import mask_phone

logger = logging.getLogger(__name__)

STOP_KEYWORDS = frozenset({"STOP", "UNSUBSCRIBE", "CANCEL", "END", "QUIT"})
HELP_KEYWORDS = frozenset({"HELP", "INFO"})
START_KEYWORDS = frozenset({"START", "SUBSCRIBE", "YES"})


class KeywordAction:
    STOP = "stop"
    HELP = "help"
    START = "start"
    NONE = "none"


def classify(body: Optional[str]) -> str:
    """Map an inbound body to a KeywordAction. Exact match only."""
    normalized = (body or "").strip().upper()
    if normalized in STOP_KEYWORDS:
        return KeywordAction.STOP
    if normalized in HELP_KEYWORDS:
        return KeywordAction.HELP
    if normalized in START_KEYWORDS:
        return KeywordAction.START
    return KeywordAction.NONE


class KeywordOutcome:
    """What processing an inbound message did."""

    def __init__(
        self,
        action: str,
        duplicate: bool = False,
        opt_out: Optional[OptOutRecord] = None,
        opt_out_created: bool = False,
        reply: Optional[Message] = None,
        reply_decision: Optional[ComplianceDecision] = None,
    ):
        self.action = action
        self.duplicate = duplicate
        self.opt_out = opt_out
        self.opt_out_created = opt_out_created
        self.reply = reply
        self.reply_decision = reply_decision

    @property
    def reply_pending(self) -> bool:
        """A reply this call enqueued and nobody has sent yet."""
        return not self.duplicate and self.reply is not None and self.reply.state == QUEUED

    def __repr__(self) -> str:
        return f"<KeywordOutcome {self.action} duplicate={self.duplicate} reply={self.reply is not None}>"


class KeywordProcessor:

    def __init__(
        self,
        ledger: OptOutLedger,
        registry: CampaignRegistry,
        gate: ComplianceGate,
        dispatcher: Dispatcher,
        session_factory: Optional[async_sessionmaker] = None,
        stop_confirmation_text: Optional[str] = None,
        help_reply_text: Optional[str] = None,
    ) -> None:
        from textgate.config import get_settings
        settings = get_settings()
        if session_factory is None:
            from textgate.database import get_session_factory
            session_factory = get_session_factory()
        self.ledger = ledger
        self.registry = registry
        self.gate = gate
        self.dispatcher = dispatcher
        self._session_factory = session_factory
        self.stop_confirmation_text = stop_confirmation_text or settings.stop_confirmation_text
        self.help_reply_text = help_reply_text or settings.help_reply_text

    def classify(self, body: Optional[str]) -> str:
        return classify(body)

    async def process(self, inbound: Message) -> KeywordOutcome:
        action = classify(inbound.body)
        masked = mask_phone(inbound.sender)

        if action == KeywordAction.START:
            logger.info(
                "Resubscription request from %s to %s (no ledger change)",
                masked, inbound.recipient,
                extra={"message_id": str(inbound.id), "phone": masked},
            )
        if action in (KeywordAction.NONE, KeywordAction.START):
            claimed, _ = await self._claim(inbound.id, action)
            return KeywordOutcome(action, duplicate=not claimed)

        outcome = KeywordOutcome(action)
        if action == KeywordAction.STOP:
            outcome.opt_out, outcome.opt_out_created = await self._record_stop(inbound)

        candidate = self._reply_candidate(inbound, action)
        decision = await self.gate.evaluate(candidate)
        reply = None
        if decision.allowed:
            reply = self.dispatcher.build(
                candidate.sender,
                candidate.recipient,
                candidate.body,
                is_system_reply=True,
                inbound_message_id=inbound.id,
            )

        claimed, reply = await self._claim(inbound.id, action, reply)
        outcome.duplicate = not claimed
        outcome.reply_decision = decision
        if not claimed:
            outcome.reply = await self._existing_reply(inbound.id)
            return outcome

        outcome.reply = reply
        if reply is not None:
            logger.info(
                "%s reply to %s queued", action.upper(), masked,
                extra={"message_id": str(reply.id), "state": QUEUED},
            )
        else:
            logger.warning(
                "%s reply to %s not sent: %s",
                action.upper(), masked, ",".join(decision.reasons),
                extra={"message_id": str(inbound.id), "decision": "deny"},
            )
        return outcome

    async def dispatch_reply(self, reply_id: uuid.UUID) -> Optional[str]:
        """Send one queued reply. Failures are recorded on the reply row, never raised."""
        try:
            return await self.dispatcher.send(reply_id)
        except DispatchInProgress:
            logger.debug("Reply %s already being dispatched", reply_id)
        except (DispatchFailed, DispatchRejected) as e:
            logger.error(
                "Keyword reply %s failed: %s", reply_id, str(e),
                extra={"message_id": str(reply_id)},
            )
        return None

    async def dispatch_pending(self, limit: int = 25) -> int:
        """Send queued replies nobody is dispatching, oldest first. Returns how many were attempted."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message.id)
                .where(
                    Message.state == QUEUED,
                    Message.is_system_reply.is_(True),
                    self.dispatcher.claim_is_stale(datetime.now(timezone.utc)),
                )
                .order_by(Message.created_at)
                .limit(limit)
            )
            pending = list(result.scalars().all())

        for reply_id in pending:
            await self.dispatch_reply(reply_id)
        return len(pending)

    async def _record_stop(self, inbound: Message) -> tuple[OptOutRecord, bool]:
        campaign_id = await self._campaign_for_reply(inbound)
        if campaign_id:
            scope_type, scope_id = SCOPE_CAMPAIGN, campaign_id
        else:
            scope_type, scope_id = SCOPE_GLOBAL, None

        record, created = await self.ledger.record_opt_out(
            inbound.sender,
            scope_type,
            scope_id,
            method="reply_keyword",
            message_id=inbound.id,
            keyword=(inbound.body or "").strip().upper(),
        )
        if created:
            logger.info(
                "STOP from %s recorded at %s scope %s",
                mask_phone(inbound.sender), record.scope_type, record.scope_id,
                extra={"message_id": str(inbound.id), "campaign_id": campaign_id},
            )
        return record, created

    async def _campaign_for_reply(self, inbound: Message) -> Optional[str]:
        """
        Campaign the recipient is replying to: the campaign of the latest
        outbound message from the number they texted, else the registry's
        assignment of that number, else None (global scope).
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message.campaign_id)
                .where(
                    Message.direction == "outbound",
                    Message.sender == inbound.recipient,
                    Message.recipient == inbound.sender,
                    Message.campaign_id.is_not(None),
                )
                .order_by(Message.created_at.desc())
                .limit(1)
            )
            campaign_id = result.scalar_one_or_none()
        if campaign_id:
            return campaign_id
        return await self.registry.campaign_for_number(inbound.recipient)

    def _reply_candidate(self, inbound: Message, action: str) -> SendCandidate:
        body = self.stop_confirmation_text if action == KeywordAction.STOP else self.help_reply_text
        return SendCandidate(
            sender=inbound.recipient,
            recipient=inbound.sender,
            body=body,
            campaign_id=None,
            skip_opt_out=action == KeywordAction.STOP,
        )

    async def _claim(
        self, inbound_id: uuid.UUID, action: str, reply: Optional[Message] = None,
    ) -> tuple[bool, Optional[Message]]:
        """Stamp the inbound row with its action and insert the reply, atomically. First stamp wins."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Message)
                .where(Message.id == inbound_id, Message.keyword_action.is_(None))
                .values(keyword_action=action)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                return False, None
            if reply is not None:
                session.add(reply)
            await session.commit()
        return True, reply

    async def _existing_reply(self, inbound_id: uuid.UUID) -> Optional[Message]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(
                    Message.inbound_message_id == inbound_id,
                    Message.is_system_reply.is_(True),
                )
                .limit(1)
            )
            return result.scalar_one_or_none()
