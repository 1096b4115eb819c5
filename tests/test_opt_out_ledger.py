"""
Opt-out ledger - scope-widening lookups and idempotent recording.
"""
import asyncio

import pytest
from sqlalchemy import select, func

from textgate.models.opt_out import OptOutRecord
from textgate.services.opt_out_ledger import OptOutLedger

PHONE = "+12125559876"


@pytest.fixture
def ledger(session_factory):
    return OptOutLedger(session_factory)


async def _count(session_factory) -> int:
    async with session_factory() as session:
        result = await session.execute(select(func.count()).select_from(OptOutRecord))
        return result.scalar_one()


class TestScopes:
    @pytest.mark.asyncio
    async def test_campaign_scope_only_blocks_that_campaign(self, ledger):
        await ledger.record_opt_out(PHONE, "campaign", "CMP_MIXED")
        assert await ledger.is_opted_out(PHONE, "CMP_MIXED", "BRAND_A") is True
        assert await ledger.is_opted_out(PHONE, "CMP_PROMO", "BRAND_A") is False

    @pytest.mark.asyncio
    async def test_brand_scope_blocks_all_brand_campaigns(self, ledger):
        await ledger.record_opt_out(PHONE, "brand", "BRAND_A")
        assert await ledger.is_opted_out(PHONE, "CMP_MIXED", "BRAND_A") is True
        assert await ledger.is_opted_out(PHONE, "CMP_PROMO", "BRAND_A") is True
        assert await ledger.is_opted_out(PHONE, "CMP_AUTH", "BRAND_B") is False

    @pytest.mark.asyncio
    async def test_global_scope_blocks_everything(self, ledger):
        record, created = await ledger.record_opt_out(PHONE, "global")
        assert created is True
        assert record.scope_id == "*"
        assert await ledger.is_opted_out(PHONE, "CMP_AUTH", "BRAND_B") is True
        assert await ledger.is_opted_out(PHONE) is True

    @pytest.mark.asyncio
    async def test_other_numbers_unaffected(self, ledger):
        await ledger.record_opt_out(PHONE, "global")
        assert await ledger.is_opted_out("+12125550000", "CMP_MIXED", "BRAND_A") is False

    @pytest.mark.asyncio
    async def test_narrowest_scope_reported(self, ledger):
        await ledger.record_opt_out(PHONE, "global")
        await ledger.record_opt_out(PHONE, "campaign", "CMP_MIXED")
        record = await ledger.find_opt_out(PHONE, "CMP_MIXED", "BRAND_A")
        assert record.scope_type == "campaign"

    @pytest.mark.asyncio
    async def test_lookup_normalizes_phone(self, ledger):
        await ledger.record_opt_out("(212) 555-9876", "campaign", "CMP_MIXED")
        assert await ledger.is_opted_out(PHONE, "CMP_MIXED") is True


class TestRecording:
    @pytest.mark.asyncio
    async def test_idempotent(self, ledger, session_factory):
        first, created_first = await ledger.record_opt_out(PHONE, "campaign", "CMP_MIXED")
        second, created_second = await ledger.record_opt_out(
            PHONE, "campaign", "CMP_MIXED", method="manual",
        )
        assert created_first is True
        assert created_second is False
        assert second.id == first.id
        assert second.method == "programmatic"
        assert await _count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_concurrent_records_single_row(self, ledger, session_factory):
        results = await asyncio.gather(*(
            ledger.record_opt_out(PHONE, "campaign", "CMP_MIXED", method="reply_keyword")
            for _ in range(5)
        ))
        assert sum(1 for _, created in results if created) == 1
        assert len({record.id for record, _ in results}) == 1
        assert await _count(session_factory) == 1

    @pytest.mark.asyncio
    async def test_keyword_and_method_stored(self, ledger):
        record, _ = await ledger.record_opt_out(
            PHONE, "campaign", "CMP_MIXED", method="reply_keyword", keyword="STOP",
        )
        assert record.method == "reply_keyword"
        assert record.keyword == "STOP"

    @pytest.mark.asyncio
    async def test_list_opt_outs(self, ledger):
        await ledger.record_opt_out(PHONE, "campaign", "CMP_MIXED")
        await ledger.record_opt_out(PHONE, "brand", "BRAND_B")
        records = await ledger.list_opt_outs(PHONE)
        assert [r.scope_type for r in records] == ["campaign", "brand"]

    @pytest.mark.asyncio
    async def test_unknown_scope(self, ledger):
        with pytest.raises(ValueError):
            await ledger.record_opt_out(PHONE, "planet", "earth")

    @pytest.mark.asyncio
    async def test_scope_id_required(self, ledger):
        with pytest.raises(ValueError):
            await ledger.record_opt_out(PHONE, "campaign")

    @pytest.mark.asyncio
    async def test_unknown_method(self, ledger):
        with pytest.raises(ValueError):
            await ledger.record_opt_out(PHONE, "global", method="carrier_pigeon")
