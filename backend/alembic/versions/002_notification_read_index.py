"""unread notifications index per recipient

Revision ID: 002
Revises: 001
Create Date: 2026-10-19
"""

from alembic import op


revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "idx_notifications_recipient_unread",
        "notifications",
        ["recipient_id", "is_read", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_notifications_recipient_unread", table_name="notifications")
