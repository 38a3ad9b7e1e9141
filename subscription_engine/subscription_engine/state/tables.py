"""SQLAlchemy 2.0 ORM table definitions for the billing state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by migrations and the repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always round-trips as UTC.

    PostgreSQL stores ``timestamptz`` natively.  SQLite drops the offset, so
    values are normalised to UTC on the way in and re-tagged on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all billing tables."""


# ---------------------------------------------------------------------------
# Tenancy: laundries, branches, profiles
# ---------------------------------------------------------------------------


class LaundryTable(Base):
    """A laundry business.  Its contact email receives billing notices."""

    __tablename__ = "laundries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)


class BranchTable(Base):
    """A physical branch of a laundry.  Subscriptions are billed per branch."""

    __tablename__ = "branches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    laundry_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("laundries.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_branches_laundry", "laundry_id"),)


class ProfileTable(Base):
    """A user of the platform attached to a laundry and optionally a branch."""

    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    laundry_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("laundries.id", ondelete="SET NULL"), nullable=True
    )
    branch_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("branches.id", ondelete="SET NULL"), nullable=True
    )
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="staff")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_profiles_branch", "branch_id"),
        Index("ix_profiles_laundry", "laundry_id"),
    )


# ---------------------------------------------------------------------------
# Plans and subscriptions
# ---------------------------------------------------------------------------


class SubscriptionPlanTable(Base):
    """A priced subscription plan."""

    __tablename__ = "subscription_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    price_monthly: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    price_annual: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="DOP")
    trial_days: Mapped[int | None] = mapped_column(Integer, nullable=True, default=14)
    grace_period_days: Mapped[int | None] = mapped_column(Integer, nullable=True, default=5)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("grace_period_days IS NULL OR grace_period_days >= 0", name="ck_plans_grace_non_negative"),
        CheckConstraint("trial_days IS NULL OR trial_days >= 0", name="ck_plans_trial_non_negative"),
    )


class BranchSubscriptionTable(Base):
    """The billing relationship of one branch to a plan."""

    __tablename__ = "branch_subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    branch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False
    )
    laundry_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("laundries.id", ondelete="CASCADE"), nullable=False
    )
    plan_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("subscription_plans.id", ondelete="SET NULL"), nullable=True
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="trial")
    billing_interval: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")
    trial_ends_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    past_due_since: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_payment_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("branch_id", name="uq_branch_subscriptions_branch"),
        CheckConstraint(
            "status IN ('trial', 'active', 'past_due', 'suspended', 'cancelled')",
            name="ck_branch_subscriptions_status",
        ),
        CheckConstraint(
            "billing_interval IN ('monthly', 'annual')",
            name="ck_branch_subscriptions_interval",
        ),
        Index("ix_branch_subscriptions_status_id", "status", "id"),
        Index("ix_branch_subscriptions_laundry", "laundry_id"),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class SubscriptionPaymentTable(Base):
    """A payment towards a subscription, usually a bank-transfer receipt."""

    __tablename__ = "subscription_payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("branch_subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    branch_id: Mapped[str] = mapped_column(String(36), ForeignKey("branches.id", ondelete="CASCADE"), nullable=False)
    laundry_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("laundries.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="DOP")
    payment_method: Mapped[str] = mapped_column(String(32), nullable=False, default="bank_transfer")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    receipt_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    receipt_uploaded_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    uploaded_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reviewed_by: Mapped[str | None] = mapped_column(String(36), nullable=True)
    reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'failed')", name="ck_subscription_payments_status"),
        CheckConstraint("amount >= 0", name="ck_subscription_payments_amount"),
        Index("ix_subscription_payments_status", "status", "created_at"),
        Index("ix_subscription_payments_subscription", "subscription_id"),
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class SubscriptionNotificationTable(Base):
    """Audit trail of billing notices, one row per dispatch.

    ``recipient_email`` holds the comma-joined addresses the notice went to.
    """

    __tablename__ = "subscription_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("branch_subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    branch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    notification_type: Mapped[str] = mapped_column(String(64), nullable=False)
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="email")
    recipient_email: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(String(512), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'sent')", name="ck_subscription_notifications_status"),
        Index(
            "ix_subscription_notifications_dedup",
            "subscription_id",
            "notification_type",
            "created_at",
        ),
    )


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------


class ScheduledJobTable(Base):
    """Bookkeeping for periodic jobs such as ``process_subscriptions``."""

    __tablename__ = "scheduled_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    cron_expression: Mapped[str] = mapped_column(String(64), nullable=False, default="0 6 * * *")
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)
