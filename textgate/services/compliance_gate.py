"""
Compliance gate - every outbound message MUST pass through here before dispatch.

Order of evaluation:
1. Campaign approval. A campaign that is unknown or not "approved" is denied
   with the single reason campaign_not_approved; nothing else runs.
2. opt_out, content, time_window, throughput - all four always run and every
   failure is reported, in that order.

The throughput token is the reservation: when the gate allows, the token has
already been taken. A deny never consumes a token, so throughput only takes
a token when the other three checks passed and otherwise peeks.

System replies (STOP confirmations, HELP text) carry no campaign: they skip
campaign approval and throughput. skip_opt_out bypasses the opt-out check
only; content and time window still apply.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field

from textgate.services.content_policy import ContentPolicy
from textgate.services.opt_out_ledger import OptOutLedger
from textgate.services.rate_governor import RateGovernor
from textgate.services.registry import CampaignRegistry, CampaignInfo
from textgate.services.time_window import TimeWindowEvaluator
from textgate.utils.phone import mask_phone

logger = logging.getLogger(__name__)

REASON_CAMPAIGN_NOT_APPROVED = "campaign_not_approved"
REASON_OPTED_OUT = "opted_out"
REASON_CONTENT = "content"
REASON_TIME_WINDOW = "time_window"
REASON_THROUGHPUT = "throughput"


class SendCandidate(BaseModel):
    sender: str
    recipient: str
    body: str = ""
    media_urls: list[str] = Field(default_factory=list)
    campaign_id: Optional[str] = None
    at: Optional[datetime] = None
    skip_opt_out: bool = False


class CheckResult:
    """One named check inside a decision."""

    def __init__(
        self,
        name: str,
        passed: bool,
        reason: str = "",
        detail: str = "",
        violations: Optional[list[str]] = None,
        retry_after: Optional[float] = None,
    ):
        self.name = name  # campaign, opt_out, content, time_window, throughput
        self.passed = passed
        self.reason = reason
        self.detail = detail
        self.violations = violations or []
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = {"name": self.name, "passed": self.passed}
        if not self.passed:
            data["reason"] = self.reason
        if self.detail:
            data["detail"] = self.detail
        if self.violations:
            data["violations"] = self.violations
        if self.retry_after is not None:
            data["retry_after"] = round(self.retry_after, 3)
        return data

    def __repr__(self) -> str:
        status = "PASS" if self.passed else f"FAIL({self.reason})"
        return f"<CheckResult {self.name} {status}>"


class ComplianceDecision:
    """Complete outcome of a gate evaluation. Never partial: all checks that ran are listed."""

    def __init__(self, checks: list[CheckResult], campaign: Optional[CampaignInfo] = None):
        self.checks = checks
        self.campaign = campaign

    @property
    def allowed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def reasons(self) -> list[str]:
        return [c.reason for c in self.checks if not c.passed]

    @property
    def content_violations(self) -> list[str]:
        return [v for c in self.checks if c.name == "content" for v in c.violations]

    @property
    def retry_after(self) -> Optional[float]:
        for c in self.checks:
            if c.name == "throughput" and not c.passed:
                return c.retry_after
        return None

    def check(self, name: str) -> Optional[CheckResult]:
        for c in self.checks:
            if c.name == name:
                return c
        return None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reasons": self.reasons,
            "checks": [c.to_dict() for c in self.checks],
        }

    def __bool__(self) -> bool:
        return self.allowed

    def __repr__(self) -> str:
        status = "ALLOW" if self.allowed else f"DENY {self.reasons}"
        return f"<ComplianceDecision {status}>"


class ComplianceGate:

    def __init__(
        self,
        registry: CampaignRegistry,
        ledger: OptOutLedger,
        content_policy: ContentPolicy,
        time_window: TimeWindowEvaluator,
        rate_governor: RateGovernor,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.content_policy = content_policy
        self.time_window = time_window
        self.rate_governor = rate_governor

    async def evaluate(self, candidate: SendCandidate) -> ComplianceDecision:
        campaign = None
        if candidate.campaign_id is not None:
            campaign = await self.registry.get_campaign(candidate.campaign_id)
            if campaign is None or not campaign.is_approved:
                status = campaign.status if campaign else "unknown"
                decision = ComplianceDecision([
                    CheckResult(
                        "campaign", False, REASON_CAMPAIGN_NOT_APPROVED,
                        f"Campaign {candidate.campaign_id} status is {status}",
                    ),
                ], campaign)
                self._log(candidate, decision)
                return decision

        checks = [
            await self._check_opt_out(candidate, campaign),
            self._check_content(candidate, campaign),
            self._check_time_window(candidate, campaign),
        ]
        if campaign is not None:
            checks.append(await self._check_throughput(campaign, all(c.passed for c in checks)))

        decision = ComplianceDecision(checks, campaign)
        self._log(candidate, decision)
        return decision

    async def _check_opt_out(
        self, candidate: SendCandidate, campaign: Optional[CampaignInfo],
    ) -> CheckResult:
        if candidate.skip_opt_out:
            return CheckResult("opt_out", True, detail="bypassed for opt-out confirmation")

        record = await self.ledger.find_opt_out(
            candidate.recipient,
            campaign_id=campaign.campaign_id if campaign else None,
            brand_id=campaign.brand_id if campaign else None,
        )
        if record is None:
            return CheckResult("opt_out", True)
        return CheckResult(
            "opt_out", False, REASON_OPTED_OUT,
            f"Recipient opted out at {record.scope_type} scope ({record.scope_id})",
        )

    def _check_content(
        self, candidate: SendCandidate, campaign: Optional[CampaignInfo],
    ) -> CheckResult:
        result = self.content_policy.evaluate(
            candidate.body, campaign.use_case if campaign else None,
        )
        if result.passed:
            return CheckResult("content", True)
        return CheckResult(
            "content", False, REASON_CONTENT,
            "Content violates: " + ", ".join(result.violations),
            violations=result.violations,
        )

    def _check_time_window(
        self, candidate: SendCandidate, campaign: Optional[CampaignInfo],
    ) -> CheckResult:
        at = candidate.at or datetime.now(timezone.utc)
        result = self.time_window.evaluate(candidate.recipient, at, campaign)
        if result.allowed:
            return CheckResult("time_window", True)
        return CheckResult("time_window", False, REASON_TIME_WINDOW, result.reason)

    async def _check_throughput(self, campaign: CampaignInfo, consume: bool) -> CheckResult:
        if consume:
            result = await self.rate_governor.try_acquire(campaign.campaign_id)
        else:
            result = await self.rate_governor.peek(campaign.campaign_id)
        if result.granted:
            return CheckResult("throughput", True)
        return CheckResult(
            "throughput", False, REASON_THROUGHPUT,
            f"Campaign throughput exhausted, retry after {result.retry_after:.2f}s",
            retry_after=result.retry_after,
        )

    def _log(self, candidate: SendCandidate, decision: ComplianceDecision) -> None:
        masked = mask_phone(candidate.recipient)
        if decision.allowed:
            logger.info(
                "Compliance ALLOWED: to=%s campaign=%s",
                masked, candidate.campaign_id,
                extra={"decision": "allow", "campaign_id": candidate.campaign_id, "phone": masked},
            )
        else:
            logger.warning(
                "Compliance BLOCKED: to=%s campaign=%s reasons=%s",
                masked, candidate.campaign_id, ",".join(decision.reasons),
                extra={"decision": "deny", "campaign_id": candidate.campaign_id, "phone": masked},
            )
