"""
Opt-out record model - the authoritative "do not send" list.

Records are never mutated or deleted by the engine. A global record
supersedes narrower ones; brand and campaign records apply only to their
scope. scope_id is "*" for global records.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, DateTime, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from textgate.database import Base

GLOBAL_SCOPE_ID = "*"


class OptOutRecord(Base):
    __tablename__ = "opt_out_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    phone: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    scope_type: Mapped[str] = mapped_column(
        String(10), nullable=False
    )  # campaign, brand, global
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)

    method: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # reply_keyword, manual, programmatic
    keyword: Mapped[Optional[str]] = mapped_column(String(20))
    message_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        UniqueConstraint("phone", "scope_type", "scope_id", name="uq_opt_out_scope"),
    )

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<OptOutRecord {masked} {self.scope_type}:{self.scope_id}>"
