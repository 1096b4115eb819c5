"""
Opt-out ledger - authoritative record of who must not be messaged, and at what scope.

Scopes widen campaign → brand → global. A recipient is opted out for a send if
any record matches the send's campaign, the campaign's brand, or global scope.
Records are append-only: recording an opt-out that already exists is a no-op
that returns the existing record.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from textgate.models.opt_out import OptOutRecord, GLOBAL_SCOPE_ID
from textgate.utils.phone import normalize_phone_e164, mask_phone

logger = logging.getLogger(__name__)

SCOPE_CAMPAIGN = "campaign"
SCOPE_BRAND = "brand"
SCOPE_GLOBAL = "global"
SCOPE_TYPES = (SCOPE_CAMPAIGN, SCOPE_BRAND, SCOPE_GLOBAL)

OPT_OUT_METHODS = ("reply_keyword", "manual", "programmatic")


class OptOutLedger:

    def __init__(self, session_factory: Optional[async_sessionmaker] = None) -> None:
        if session_factory is None:
            from textgate.database import get_session_factory
            session_factory = get_session_factory()
        self._session_factory = session_factory

    async def find_opt_out(
        self,
        phone: str,
        campaign_id: Optional[str] = None,
        brand_id: Optional[str] = None,
    ) -> Optional[OptOutRecord]:
        """
        Return the record that blocks phone for this campaign/brand, or None.
        When several match, the narrowest scope is returned (campaign, then brand,
        then global).
        """
        phone = _normalize(phone)
        clauses = [OptOutRecord.scope_type == SCOPE_GLOBAL]
        if campaign_id:
            clauses.append(and_(
                OptOutRecord.scope_type == SCOPE_CAMPAIGN,
                OptOutRecord.scope_id == campaign_id,
            ))
        if brand_id:
            clauses.append(and_(
                OptOutRecord.scope_type == SCOPE_BRAND,
                OptOutRecord.scope_id == brand_id,
            ))

        async with self._session_factory() as session:
            result = await session.execute(
                select(OptOutRecord).where(
                    OptOutRecord.phone == phone,
                    or_(*clauses),
                )
            )
            records = list(result.scalars().all())

        if not records:
            return None
        records.sort(key=lambda r: SCOPE_TYPES.index(r.scope_type))
        return records[0]

    async def is_opted_out(
        self,
        phone: str,
        campaign_id: Optional[str] = None,
        brand_id: Optional[str] = None,
    ) -> bool:
        return await self.find_opt_out(phone, campaign_id, brand_id) is not None

    async def record_opt_out(
        self,
        phone: str,
        scope_type: str,
        scope_id: Optional[str] = None,
        method: str = "programmatic",
        message_id: Optional[uuid.UUID] = None,
        keyword: Optional[str] = None,
    ) -> tuple[OptOutRecord, bool]:
        """
        Record an opt-out. Idempotent on (phone, scope_type, scope_id).

        Returns: (record, created). created is False when the record already existed.
        """
        if scope_type not in SCOPE_TYPES:
            raise ValueError(f"Unknown opt-out scope: {scope_type}")
        if method not in OPT_OUT_METHODS:
            raise ValueError(f"Unknown opt-out method: {method}")
        if scope_type == SCOPE_GLOBAL:
            scope_id = GLOBAL_SCOPE_ID
        elif not scope_id:
            raise ValueError(f"{scope_type} opt-out requires a scope id")

        phone = _normalize(phone)

        existing = await self._get(phone, scope_type, scope_id)
        if existing is not None:
            return existing, False

        record = OptOutRecord(
            phone=phone,
            scope_type=scope_type,
            scope_id=scope_id,
            method=method,
            message_id=message_id,
            keyword=keyword,
        )
        lost_race = False
        async with self._session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                # Another writer recorded the same key first
                await session.rollback()
                lost_race = True

        if lost_race:
            existing = await self._get(phone, scope_type, scope_id)
            if existing is None:
                raise RuntimeError(f"Opt-out insert conflicted but no record found for {mask_phone(phone)}")
            return existing, False

        logger.info(
            "Opt-out recorded: %s scope=%s:%s method=%s",
            mask_phone(phone), scope_type, scope_id, method,
            extra={"phone": mask_phone(phone)},
        )
        return record, True

    async def list_opt_outs(self, phone: str) -> list[OptOutRecord]:
        phone = _normalize(phone)
        async with self._session_factory() as session:
            result = await session.execute(
                select(OptOutRecord)
                .where(OptOutRecord.phone == phone)
                .order_by(OptOutRecord.created_at)
            )
            return list(result.scalars().all())

    async def _get(
        self, phone: str, scope_type: str, scope_id: str,
    ) -> Optional[OptOutRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(OptOutRecord).where(
                    OptOutRecord.phone == phone,
                    OptOutRecord.scope_type == scope_type,
                    OptOutRecord.scope_id == scope_id,
                )
            )
            return result.scalar_one_or_none()


def _normalize(phone: str) -> str:
    return normalize_phone_e164(phone) or phone
