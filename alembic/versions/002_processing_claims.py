"""Processing claims: dispatch claim on messages, claim token + lease on webhook events

Revision ID: 002
Revises: 001
Create Date: 2026-10-20
"""
from alembic import op
import sqlalchemy as sa

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("messages", sa.Column("dispatch_claimed_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("webhook_events", sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("webhook_events", sa.Column("claim_token", sa.String(32), nullable=True))

    # Reply dispatch worker scans queued system replies
    op.create_index(
        "ix_messages_queued_replies", "messages", ["state", "is_system_reply", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_messages_queued_replies", table_name="messages")
    op.drop_column("webhook_events", "claim_token")
    op.drop_column("webhook_events", "claimed_at")
    op.drop_column("messages", "dispatch_claimed_at")
