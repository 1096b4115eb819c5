"""
Webhook event audit trail - every verified gateway webhook is recorded before
processing and kept whether or not it was applied.

processing_status: received → processing → processed, or
processing → retrying → ... → dead once retries are exhausted. Signed bodies
that fail validation are kept as invalid_payload, keyed by their hash.

claim_token identifies the worker processing the row; a processing row whose
claimed_at is older than the lease is taken over by the retry worker.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, Integer, Boolean, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from textgate.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_id = Column(String(100), nullable=False, unique=True)
    event_type = Column(String(50), nullable=False)
    resource_id = Column(String(100), nullable=True, index=True)
    payload = Column(JSONB, nullable=False)
    payload_hash = Column(String(64), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    received_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    processing_status = Column(
        String(20), nullable=False, default="received", server_default="received"
    )
    processed = Column(Boolean, nullable=False, default=False, server_default="false")
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0, server_default="0")
    max_retries = Column(Integer, nullable=False, default=5, server_default="5")
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    correlation_id = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claim_token = Column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_retry", "processing_status", "next_retry_at"),
    )

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_id} {self.event_type} ({self.processing_status})>"
