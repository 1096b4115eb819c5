"""
Messaging service - wires the engine together for the HTTP surface and workers.

send():  normalize → ComplianceGate → Dispatcher.enqueue → Dispatcher.send
ingest_webhook(): WebhookReconciler.ingest, then any keyword reply is sent in the
                  background once the webhook has been answered

Built once per process by build(); every component can also be injected, which
is how tests assemble it against SQLite and mock transports.
"""
import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from textgate.exceptions import ComplianceDenied
from textgate.models.message import Message
from textgate.services.compliance_gate import ComplianceDecision, ComplianceGate, SendCandidate
from textgate.services.content_policy import ContentPolicy
from textgate.services.delivery_tracker import DeliveryStateTracker
from textgate.services.dispatcher import Dispatcher
from textgate.services.gateway import GatewayClient
from textgate.services.keyword_processor import KeywordProcessor
from textgate.services.opt_out_ledger import OptOutLedger
from textgate.services.rate_governor import RateGovernor
from textgate.services.registry import CampaignRegistry, build_registry
from textgate.services.time_window import TimeWindowEvaluator
from textgate.services.webhook_reconciler import WebhookReconciler
from textgate.utils.phone import normalize_phone_e164

logger = logging.getLogger(__name__)


class SendOutcome:
    """Result of a send request: the gate's decision and, if allowed, the dispatched message."""

    def __init__(
        self,
        decision: ComplianceDecision,
        message: Optional[Message] = None,
        external_id: Optional[str] = None,
    ):
        self.decision = decision
        self.message = message
        self.external_id = external_id

    @property
    def allowed(self) -> bool:
        return self.decision.allowed

    def __repr__(self) -> str:
        return f"<SendOutcome allowed={self.allowed} external_id={self.external_id}>"


class MessagingService:

    def __init__(
        self,
        registry: CampaignRegistry,
        ledger: OptOutLedger,
        gate: ComplianceGate,
        dispatcher: Dispatcher,
        tracker: DeliveryStateTracker,
        keyword_processor: KeywordProcessor,
        reconciler: WebhookReconciler,
        gateway: Optional[GatewayClient] = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.gate = gate
        self.dispatcher = dispatcher
        self.tracker = tracker
        self.keyword_processor = keyword_processor
        self.reconciler = reconciler
        self.gateway = gateway
        self._background: set[asyncio.Task] = set()

    @classmethod
    def build(
        cls,
        session_factory: Optional[async_sessionmaker] = None,
        registry: Optional[CampaignRegistry] = None,
        gateway: Optional[GatewayClient] = None,
        content_policy: Optional[ContentPolicy] = None,
        time_window: Optional[TimeWindowEvaluator] = None,
        rate_governor: Optional[RateGovernor] = None,
        **reconciler_options,
    ) -> "MessagingService":
        if session_factory is None:
            from textgate.database import get_session_factory
            session_factory = get_session_factory()
        registry = registry or build_registry()
        gateway = gateway or GatewayClient.from_settings()

        ledger = OptOutLedger(session_factory)
        tracker = DeliveryStateTracker(session_factory)
        gate = ComplianceGate(
            registry,
            ledger,
            content_policy or ContentPolicy.from_settings(),
            time_window or TimeWindowEvaluator.from_settings(),
            rate_governor or RateGovernor.from_settings(registry),
        )
        dispatcher = Dispatcher(gateway, tracker, session_factory)
        keyword_processor = KeywordProcessor(ledger, registry, gate, dispatcher, session_factory)
        reconciler = WebhookReconciler(
            tracker, keyword_processor, session_factory, **reconciler_options,
        )
        return cls(
            registry, ledger, gate, dispatcher, tracker, keyword_processor, reconciler, gateway,
        )

    async def send(self, candidate: SendCandidate, raise_on_deny: bool = False) -> SendOutcome:
        """
        Gate, persist and dispatch one outbound message.

        A denial is returned as a SendOutcome (or raised as ComplianceDenied when
        raise_on_deny is set). Dispatch errors propagate: DispatchFailed,
        DispatchRejected, DispatchInProgress.
        """
        candidate = candidate.model_copy(update={
            "sender": normalize_phone_e164(candidate.sender) or candidate.sender,
            "recipient": normalize_phone_e164(candidate.recipient) or candidate.recipient,
        })

        decision = await self.gate.evaluate(candidate)
        if not decision.allowed:
            if raise_on_deny:
                raise ComplianceDenied(decision)
            return SendOutcome(decision)

        message = await self.dispatcher.enqueue(
            candidate.sender,
            candidate.recipient,
            candidate.body,
            media_urls=candidate.media_urls,
            campaign_id=candidate.campaign_id,
        )
        external_id = await self.dispatcher.send(message.id)
        message = await self.tracker.get(message.id)
        return SendOutcome(decision, message, external_id)

    async def get_message(self, message_id: uuid.UUID) -> Optional[Message]:
        return await self.tracker.get(message_id)

    async def ingest_webhook(self, raw_body: bytes, signature: Optional[str], timestamp: Optional[str]):
        result = await self.reconciler.ingest(raw_body, signature, timestamp)
        if result.keyword is not None and result.keyword.reply_pending:
            # Picked up by the reply dispatch worker if this process dies first
            task = asyncio.create_task(self.keyword_processor.dispatch_reply(result.keyword.reply.id))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        return result

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for reply dispatch and event processing still running after their requests returned."""
        await self.reconciler.drain(timeout)
        if self._background:
            await asyncio.wait(set(self._background), timeout=timeout)

    async def close(self) -> None:
        await self.drain(timeout=10)
        if self.gateway is not None:
            await self.gateway.close()
        aclose = getattr(self.registry, "aclose", None)
        if aclose is not None:
            await aclose()


_service: Optional[MessagingService] = None


def get_messaging_service() -> MessagingService:
    """Process-wide service, built lazily from settings. FastAPI dependency."""
    global _service
    if _service is None:
        _service = MessagingService.build()
    return _service


def set_messaging_service(service: Optional[MessagingService]) -> None:
    global _service
    _service = service
