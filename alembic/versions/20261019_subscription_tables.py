"""Create subscriptions and subscription_events tables.

Revision ID: 5c1e0a7d2b91
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "5c1e0a7d2b91"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False, index=True),
        sa.Column("platform", sa.String(20), nullable=False),
        sa.Column("product_id", sa.String(255), nullable=False),
        sa.Column("tier", sa.String(20), nullable=False, server_default="consumer"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active", index=True),
        sa.Column("transaction_id", sa.String(255), nullable=True),
        sa.Column("original_transaction_id", sa.String(500), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("grace_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_renewing", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("payment_state", sa.Integer, nullable=True),
        sa.Column("acknowledgment_state", sa.Integer, nullable=True),
        sa.Column("environment", sa.String(20), nullable=True),
        sa.Column("receipt_or_token", sa.Text, nullable=True),
        sa.Column("last_event_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_event_kind", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_subscriptions_platform_otid", "subscriptions", ["platform", "original_transaction_id"]
    )
    op.create_index("ix_subscriptions_user_created", "subscriptions", ["user_id", "created_at"])

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "subscription_id", sa.String(36),
            sa.ForeignKey("subscriptions.id", ondelete="SET NULL"), nullable=True, index=True,
        ),
        sa.Column("user_id", sa.String(36), nullable=True, index=True),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("external_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(30), nullable=False, server_default="received", index=True),
        sa.Column("event_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", sa.JSON, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("source", "external_id", name="uq_subscription_events_source_external"),
    )
    op.create_index(
        "ix_subscription_events_source_type", "subscription_events", ["source", "event_type"]
    )


def downgrade() -> None:
    op.drop_index("ix_subscription_events_source_type", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_index("ix_subscriptions_user_created", table_name="subscriptions")
    op.drop_index("ix_subscriptions_platform_otid", table_name="subscriptions")
    op.drop_table("subscriptions")
