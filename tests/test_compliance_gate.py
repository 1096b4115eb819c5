"""
Compliance gate - every outbound send is decided here.
Default send time: Tuesday 2026-01-13 12:00 New York.
"""
from datetime import datetime, timezone

import pytest

from textgate.services.compliance_gate import ComplianceGate, SendCandidate
from textgate.services.content_policy import ContentPolicy
from textgate.services.opt_out_ledger import OptOutLedger
from textgate.services.rate_governor import InMemoryBucketStore, RateGovernor
from textgate.services.time_window import TimeWindowEvaluator

SENDER = "+12125550100"
RECIPIENT = "+12125559876"
NOON_NY = datetime(2026, 1, 13, 17, 0, tzinfo=timezone.utc)
FIVE_AM_NY = datetime(2026, 1, 13, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger(session_factory):
    return OptOutLedger(session_factory)


@pytest.fixture
def store():
    return InMemoryBucketStore()


@pytest.fixture
def gate(registry, ledger, store, clock):
    return ComplianceGate(
        registry,
        ledger,
        ContentPolicy(),
        TimeWindowEvaluator(),
        RateGovernor(registry, store, clock=clock),
    )


def candidate(**overrides) -> SendCandidate:
    data = {
        "sender": SENDER,
        "recipient": RECIPIENT,
        "body": "Your order has shipped.",
        "campaign_id": "CMP_MIXED",
        "at": NOON_NY,
    }
    data.update(overrides)
    return SendCandidate(**data)


class TestAllow:
    @pytest.mark.asyncio
    async def test_all_checks_pass(self, gate):
        decision = await gate.evaluate(candidate())
        assert decision.allowed is True
        assert bool(decision) is True
        assert decision.reasons == []
        assert [c.name for c in decision.checks] == ["opt_out", "content", "time_window", "throughput"]

    @pytest.mark.asyncio
    async def test_allow_consumes_token(self, gate, store):
        await gate.evaluate(candidate())
        assert store.state("CMP_MIXED").tokens == 4.0


class TestCampaignApproval:
    @pytest.mark.asyncio
    async def test_pending_campaign_short_circuits(self, gate, ledger):
        await ledger.record_opt_out(RECIPIENT, "global")
        decision = await gate.evaluate(candidate(campaign_id="CMP_PENDING", body="beer", at=FIVE_AM_NY))
        assert decision.allowed is False
        assert decision.reasons == ["campaign_not_approved"]
        assert len(decision.checks) == 1

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, gate):
        decision = await gate.evaluate(candidate(campaign_id="CMP_NOPE"))
        assert decision.reasons == ["campaign_not_approved"]
        assert "unknown" in decision.checks[0].detail


class TestOptOut:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("scope_type,scope_id", [
        ("campaign", "CMP_MIXED"),
        ("brand", "BRAND_A"),
        ("global", None),
    ])
    async def test_opted_out_at_any_scope(self, gate, ledger, scope_type, scope_id):
        await ledger.record_opt_out(RECIPIENT, scope_type, scope_id)
        decision = await gate.evaluate(candidate())
        assert decision.allowed is False
        assert decision.reasons == ["opted_out"]
        assert scope_type in decision.check("opt_out").detail

    @pytest.mark.asyncio
    async def test_other_campaign_opt_out_does_not_apply(self, gate, ledger):
        await ledger.record_opt_out(RECIPIENT, "campaign", "CMP_PROMO")
        assert (await gate.evaluate(candidate())).allowed is True

    @pytest.mark.asyncio
    async def test_opted_out_regardless_of_content_and_time(self, gate, ledger):
        await ledger.record_opt_out(RECIPIENT, "global")
        decision = await gate.evaluate(candidate(body="Cheap cigarettes", at=FIVE_AM_NY))
        assert decision.reasons == ["opted_out", "content", "time_window"]

    @pytest.mark.asyncio
    async def test_skip_opt_out_bypasses_only_opt_out(self, gate, ledger):
        await ledger.record_opt_out(RECIPIENT, "global")
        decision = await gate.evaluate(candidate(campaign_id=None, skip_opt_out=True))
        assert decision.allowed is True
        decision = await gate.evaluate(candidate(campaign_id=None, skip_opt_out=True, at=FIVE_AM_NY))
        assert decision.reasons == ["time_window"]


class TestContentAndTime:
    @pytest.mark.asyncio
    async def test_content_violations_listed(self, gate):
        decision = await gate.evaluate(candidate(body="Beer and guns"))
        assert decision.reasons == ["content"]
        assert decision.content_violations == ["alcohol", "firearms"]

    @pytest.mark.asyncio
    async def test_use_case_rules_applied(self, gate):
        decision = await gate.evaluate(candidate(campaign_id="CMP_PROMO", body="Big sale today"))
        assert decision.content_violations == ["missing_opt_out_instruction"]

    @pytest.mark.asyncio
    async def test_five_am_local_denied(self, gate):
        decision = await gate.evaluate(candidate(at=FIVE_AM_NY))
        assert decision.allowed is False
        assert decision.reasons == ["time_window"]

    @pytest.mark.asyncio
    async def test_all_failures_enumerated_in_order(self, gate, store):
        for _ in range(5):
            await gate.evaluate(candidate())
        decision = await gate.evaluate(candidate(body="Vodka night", at=FIVE_AM_NY))
        assert decision.reasons == ["content", "time_window", "throughput"]


class TestThroughput:
    @pytest.mark.asyncio
    async def test_exhausted_bucket_denied_with_retry_after(self, gate):
        for _ in range(5):
            assert (await gate.evaluate(candidate())).allowed is True
        decision = await gate.evaluate(candidate())
        assert decision.reasons == ["throughput"]
        assert decision.retry_after == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_deny_does_not_consume_token(self, gate, store):
        for _ in range(3):
            decision = await gate.evaluate(candidate(at=FIVE_AM_NY))
            assert decision.allowed is False
        assert store.state("CMP_MIXED").tokens == 5.0
        granted = [(await gate.evaluate(candidate())).allowed for _ in range(6)]
        assert granted == [True] * 5 + [False]

    @pytest.mark.asyncio
    async def test_system_reply_skips_throughput(self, gate):
        decision = await gate.evaluate(candidate(campaign_id=None))
        assert decision.check("throughput") is None
        assert decision.check("campaign") is None
        assert decision.allowed is True


class TestDecision:
    @pytest.mark.asyncio
    async def test_to_dict(self, gate):
        decision = await gate.evaluate(candidate(body="beer", at=FIVE_AM_NY))
        data = decision.to_dict()
        assert data["allowed"] is False
        assert data["reasons"] == ["content", "time_window"]
        content = next(c for c in data["checks"] if c["name"] == "content")
        assert content["violations"] == ["alcohol"]
        assert content["reason"] == "content"
