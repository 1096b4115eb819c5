"""Initial schema - messages, opt-out ledger, webhook audit trail, transition anomalies.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Messages (outbound and inbound)
    op.create_table(
        "messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("external_id", sa.String(100), unique=True),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("sender", sa.String(20), nullable=False),
        sa.Column("recipient", sa.String(20), nullable=False),
        sa.Column("body", sa.Text, nullable=False, server_default=""),
        sa.Column("media_urls", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("campaign_id", sa.String(64)),
        sa.Column("segment_count", sa.Integer, nullable=False, server_default="1"),
        sa.Column("encoding", sa.String(10), nullable=False, server_default="gsm7"),
        sa.Column("cost_usd", sa.Float),
        sa.Column("state", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("error_code", sa.String(50)),
        sa.Column("error_message", sa.Text),
        sa.Column("attempt_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_system_reply", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("inbound_message_id", postgresql.UUID(as_uuid=True)),
        sa.Column("keyword_action", sa.String(10)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("dispatched_at", sa.DateTime(timezone=True)),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("failed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_messages_campaign_id", "messages", ["campaign_id"])
    op.create_index("ix_messages_state", "messages", ["state"])
    op.create_index(
        "ix_messages_sender_recipient", "messages", ["sender", "recipient", "direction"],
    )
    op.create_index("ix_messages_inbound_message_id", "messages", ["inbound_message_id"])

    # Opt-out ledger
    op.create_table(
        "opt_out_records",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("scope_type", sa.String(10), nullable=False),
        sa.Column("scope_id", sa.String(64), nullable=False),
        sa.Column("method", sa.String(20), nullable=False),
        sa.Column("keyword", sa.String(20)),
        sa.Column("message_id", postgresql.UUID(as_uuid=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("phone", "scope_type", "scope_id", name="uq_opt_out_scope"),
    )
    op.create_index("ix_opt_out_records_phone", "opt_out_records", ["phone"])

    # Webhook audit trail
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("event_id", sa.String(100), nullable=False, unique=True),
        sa.Column("event_type", sa.String(50), nullable=False),
        sa.Column("resource_id", sa.String(100)),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True)),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("processed", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("error_message", sa.Text),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="5"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True)),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("correlation_id", sa.String(64)),
    )
    op.create_index("ix_webhook_events_resource_id", "webhook_events", ["resource_id"])
    op.create_index(
        "ix_webhook_events_retry", "webhook_events", ["processing_status", "next_retry_at"],
    )

    # Discarded state transitions
    op.create_table(
        "transition_anomalies",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("message_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("current_state", sa.String(20), nullable=False),
        sa.Column("attempted_state", sa.String(20), nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("event_id", sa.String(100)),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_transition_anomalies_message_id", "transition_anomalies", ["message_id"],
    )


def downgrade() -> None:
    op.drop_table("transition_anomalies")
    op.drop_table("webhook_events")
    op.drop_table("opt_out_records")
    op.drop_table("messages")
