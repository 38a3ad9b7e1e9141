"""Billing schema: tenancy, plans, branch subscriptions, payments, notices, jobs.

Revision ID: 001
Revises: None
Create Date: 2024-01-08 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _ts(name: str, *, nullable: bool = True) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _fk(name: str, target: str, *, ondelete: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.String(36), sa.ForeignKey(target, ondelete=ondelete), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "laundries",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False),
    )

    op.create_table(
        "branches",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("laundry_id", "laundries.id", ondelete="CASCADE"),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("code", sa.String(32), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_branches_laundry", "branches", ["laundry_id"])

    op.create_table(
        "profiles",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("laundry_id", "laundries.id", ondelete="SET NULL", nullable=True),
        _fk("branch_id", "branches.id", ondelete="SET NULL", nullable=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("role", sa.String(32), nullable=False, server_default="staff"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False),
    )
    op.create_index("ix_profiles_branch", "profiles", ["branch_id"])
    op.create_index("ix_profiles_laundry", "profiles", ["laundry_id"])

    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("price_monthly", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("price_annual", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="DOP"),
        sa.Column("trial_days", sa.Integer(), nullable=True, server_default="14"),
        sa.Column("grace_period_days", sa.Integer(), nullable=True, server_default="5"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("grace_period_days IS NULL OR grace_period_days >= 0", name="ck_plans_grace_non_negative"),
        sa.CheckConstraint("trial_days IS NULL OR trial_days >= 0", name="ck_plans_trial_non_negative"),
    )

    op.create_table(
        "branch_subscriptions",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("branch_id", "branches.id", ondelete="CASCADE"),
        _fk("laundry_id", "laundries.id", ondelete="CASCADE"),
        _fk("plan_id", "subscription_plans.id", ondelete="SET NULL", nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="trial"),
        sa.Column("billing_interval", sa.String(16), nullable=False, server_default="monthly"),
        _ts("trial_ends_at"),
        _ts("current_period_start"),
        _ts("current_period_end"),
        _ts("past_due_since"),
        _ts("suspended_at"),
        _ts("cancelled_at"),
        _ts("last_payment_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
        sa.UniqueConstraint("branch_id", name="uq_branch_subscriptions_branch"),
        sa.CheckConstraint(
            "status IN ('trial', 'active', 'past_due', 'suspended', 'cancelled')",
            name="ck_branch_subscriptions_status",
        ),
        sa.CheckConstraint("billing_interval IN ('monthly', 'annual')", name="ck_branch_subscriptions_interval"),
    )
    op.create_index("ix_branch_subscriptions_status_id", "branch_subscriptions", ["status", "id"])
    op.create_index("ix_branch_subscriptions_laundry", "branch_subscriptions", ["laundry_id"])

    op.create_table(
        "subscription_payments",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("subscription_id", "branch_subscriptions.id", ondelete="CASCADE"),
        _fk("branch_id", "branches.id", ondelete="CASCADE"),
        _fk("laundry_id", "laundries.id", ondelete="CASCADE"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="DOP"),
        sa.Column("payment_method", sa.String(32), nullable=False, server_default="bank_transfer"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("receipt_url", sa.String(2048), nullable=True),
        _ts("receipt_uploaded_at"),
        sa.Column("uploaded_by", sa.String(36), nullable=True),
        sa.Column("reviewed_by", sa.String(36), nullable=True),
        _ts("reviewed_at"),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("status IN ('pending', 'completed', 'failed')", name="ck_subscription_payments_status"),
        sa.CheckConstraint("amount >= 0", name="ck_subscription_payments_amount"),
    )
    op.create_index("ix_subscription_payments_status", "subscription_payments", ["status", "created_at"])
    op.create_index("ix_subscription_payments_subscription", "subscription_payments", ["subscription_id"])

    op.create_table(
        "subscription_notifications",
        sa.Column("id", sa.String(36), primary_key=True),
        _fk("subscription_id", "branch_subscriptions.id", ondelete="CASCADE"),
        sa.Column("branch_id", sa.String(36), nullable=True),
        sa.Column("notification_type", sa.String(64), nullable=False),
        sa.Column("channel", sa.String(16), nullable=False, server_default="email"),
        sa.Column("recipient_email", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(512), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        _ts("sent_at"),
        _ts("created_at", nullable=False),
        sa.CheckConstraint("status IN ('pending', 'sent')", name="ck_subscription_notifications_status"),
    )
    op.create_index(
        "ix_subscription_notifications_dedup",
        "subscription_notifications",
        ["subscription_id", "notification_type", "created_at"],
    )

    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("job_name", sa.String(128), nullable=False, unique=True),
        sa.Column("cron_expression", sa.String(64), nullable=False, server_default="0 6 * * *"),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_run_at"),
        _ts("next_run_at"),
        _ts("created_at", nullable=False),
        _ts("updated_at", nullable=False),
    )


def downgrade() -> None:
    for table in (
        "scheduled_jobs",
        "subscription_notifications",
        "subscription_payments",
        "branch_subscriptions",
        "subscription_plans",
        "profiles",
        "branches",
        "laundries",
    ):
        op.drop_table(table)
