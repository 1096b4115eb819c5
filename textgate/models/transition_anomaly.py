"""
Transition anomaly - audit row for a state transition that was discarded
(regression, duplicate, or an attempt to leave a terminal state).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from textgate.database import Base


class TransitionAnomaly(Base):
    __tablename__ = "transition_anomalies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    current_state: Mapped[str] = mapped_column(String(20), nullable=False)
    attempted_state: Mapped[str] = mapped_column(String(20), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)  # dispatcher, webhook
    event_id: Mapped[Optional[str]] = mapped_column(String(100))
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<TransitionAnomaly {self.current_state}->{self.attempted_state}>"
