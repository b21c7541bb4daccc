"""Billing and TorBox provisioning tables.

Revision ID: 2026_10_01_billing
Revises:
Create Date: 2026-10-01

Creates:
  - subscriptions      (one per user)
  - vendor_links       (one per user, never deleted, only marked revoked)
  - audit_log          (append-only)
  - webhook_events     (Stripe idempotency)
  - vendor_capacity    (one row per reconciliation)

``users`` belongs to the account service and is not created here.
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "2026_10_01_billing"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="not_subscribed"),
        sa.Column("plan", sa.String(), nullable=False, server_default="standard"),
        sa.Column("stripe_customer_id", sa.String(), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(), nullable=True),
        sa.Column("current_period_start", sa.DateTime(), nullable=True),
        sa.Column("current_period_end", sa.DateTime(), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_subscriptions_user_id", "subscriptions", ["user_id"], unique=True)
    op.create_index("ix_subscriptions_status", "subscriptions", ["status"])
    op.create_index("ix_subscriptions_stripe_customer_id", "subscriptions", ["stripe_customer_id"])
    op.create_index(
        "ix_subscriptions_stripe_subscription_id", "subscriptions", ["stripe_subscription_id"], unique=True,
    )

    op.create_table(
        "vendor_links",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("subscription_id", sa.String(), nullable=True),
        sa.Column("vendor_account_id", sa.String(), nullable=True),
        sa.Column("vendor_email", sa.String(), nullable=False),
        sa.Column("api_token_encrypted", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="pending_provision"),
        sa.Column("provision_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_provision_attempt", sa.DateTime(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_vendor_links_user_id", "vendor_links", ["user_id"], unique=True)
    op.create_index("ix_vendor_links_subscription_id", "vendor_links", ["subscription_id"])
    op.create_index("ix_vendor_links_vendor_account_id", "vendor_links", ["vendor_account_id"])
    op.create_index("ix_vendor_links_status", "vendor_links", ["status"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("event_data", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_audit_log_user_id", "audit_log", ["user_id"])
    op.create_index("ix_audit_log_event_type", "audit_log", ["event_type"])
    op.create_index("ix_audit_log_correlation_id", "audit_log", ["correlation_id"])
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.String(), primary_key=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.Column("result", sa.Text(), nullable=True),
    )

    op.create_table(
        "vendor_capacity",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("users_allowed", sa.Integer(), nullable=False),
        sa.Column("current_users", sa.Integer(), nullable=False),
        sa.Column("vendor_status", sa.String(), nullable=False, server_default="recorded"),
        sa.Column("recorded_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_vendor_capacity_recorded_at", "vendor_capacity", ["recorded_at"])


def downgrade() -> None:
    op.drop_table("vendor_capacity")
    op.drop_table("webhook_events")
    op.drop_table("audit_log")
    op.drop_table("vendor_links")
    op.drop_table("subscriptions")
