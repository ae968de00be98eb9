"""add notification idempotency markers

Revision ID: 0001_notification_markers
Revises:
Create Date: 2026-10-12
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001_notification_markers"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Unique marker_key gives a single winner per (kind, recipient, period).
    op.create_table(
        "notification_markers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("marker_key", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("recipient", sa.String(), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("marker_key", name="uq_notification_markers_key"),
    )
    op.create_index("ix_notification_markers_kind", "notification_markers", ["kind"])
    op.create_index("ix_notification_markers_expires_at", "notification_markers", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_notification_markers_expires_at", table_name="notification_markers")
    op.drop_index("ix_notification_markers_kind", table_name="notification_markers")
    op.drop_table("notification_markers")
