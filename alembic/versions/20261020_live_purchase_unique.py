"""Enforce one live subscription row per purchase.

Revision ID: 8f3b6d41c0e7
Revises: 5c1e0a7d2b91
Create Date: 2026-10-20
"""
from alembic import op
import sqlalchemy as sa

revision = "8f3b6d41c0e7"
down_revision = "5c1e0a7d2b91"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "uq_subscriptions_live_purchase",
        "subscriptions",
        ["platform", "original_transaction_id"],
        unique=True,
        postgresql_where=sa.text("status <> 'expired'"),
        sqlite_where=sa.text("status <> 'expired'"),
    )


def downgrade() -> None:
    op.drop_index("uq_subscriptions_live_purchase", table_name="subscriptions")
