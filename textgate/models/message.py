"""
Message model - one row per outbound or inbound SMS/MMS.

Outbound lifecycle: queued → dispatched → sent → delivered, with failed
reachable from queued, dispatched and sent. Inbound messages are stored as
received. delivered, failed and received are terminal.

external_id is the gateway-assigned id; once set it never changes.
A queued message is sent by whichever process claims it (dispatch_claimed_at).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Float, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from textgate.database import Base


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)

    direction: Mapped[str] = mapped_column(
        String(10), nullable=False
    )  # outbound, inbound
    sender: Mapped[str] = mapped_column(String(20), nullable=False)
    recipient: Mapped[str] = mapped_column(String(20), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    media_urls: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)

    # None for system replies (STOP confirmation, HELP text) and inbound
    campaign_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)

    segment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    encoding: Mapped[str] = mapped_column(String(10), nullable=False, default="gsm7")
    cost_usd: Mapped[Optional[float]] = mapped_column(Float)

    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default="queued"
    )  # queued, dispatched, sent, delivered, failed, received
    error_code: Mapped[Optional[str]] = mapped_column(String(50))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Set by the dispatcher that owns the gateway call; stale after the claim lease
    dispatch_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    is_system_reply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    inbound_message_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    # Inbound keyword handling: stop, help, start, none
    keyword_action: Mapped[Optional[str]] = mapped_column(String(10))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_messages_state", "state"),
        Index("ix_messages_sender_recipient", "sender", "recipient", "direction"),
        Index("ix_messages_inbound_message_id", "inbound_message_id"),
        Index("ix_messages_queued_replies", "state", "is_system_reply", "created_at"),
    )

    def __repr__(self) -> str:
        masked = self.recipient[:6] + "***" if self.recipient else "unknown"
        return f"<Message {self.direction} to={masked} ({self.state})>"
