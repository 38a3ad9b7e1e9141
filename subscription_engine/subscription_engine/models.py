"""Domain models for branch subscriptions, plans, payments and notifications.

These are plain Pydantic value objects.  ORM rows are converted with
``Model.model_validate(row)`` (``from_attributes`` is enabled) so the
lifecycle functions never touch the database layer.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SubscriptionStatus(str, Enum):
    """Lifecycle states of a branch subscription."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class BillingInterval(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class PaymentMethod(str, Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"


NOTIFICATION_CHANNEL_EMAIL = "email"

# Statuses the batch processor has to look at on every run.
EVALUABLE_STATUSES: tuple[SubscriptionStatus, ...] = (
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.ACTIVE,
)

# Statuses that block order intake and sales.
BLOCKING_STATUSES: frozenset[SubscriptionStatus] = frozenset(
    {SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED}
)


# ---------------------------------------------------------------------------
# Notification type tags
# ---------------------------------------------------------------------------

SUSPENDED_NOTIFICATION = "suspended"


def trial_ending_type(days: int) -> str:
    """Return the notification tag for a trial-ending reminder."""
    return f"trial_ending_{days}d"


def past_due_type(days: int) -> str:
    """Return the notification tag for a past-due reminder."""
    return f"past_due_{days}d"


class Reminder(BaseModel):
    """A notification milestone selected for one subscription."""

    model_config = ConfigDict(frozen=True)

    notification_type: str
    days_remaining: int | None = None


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class PlanTerms(BaseModel):
    """The subset of a subscription plan the lifecycle rules depend on."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str = ""
    price_monthly: Decimal = Decimal("0")
    price_annual: Decimal = Decimal("0")
    currency: str | None = None
    trial_days: int | None = None
    grace_period_days: int | None = None


class SubscriptionState(BaseModel):
    """Snapshot of one branch subscription at evaluation time."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    branch_id: str
    plan_id: str | None = None
    status: SubscriptionStatus
    billing_interval: BillingInterval = BillingInterval.MONTHLY
    trial_ends_at: datetime | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    past_due_since: datetime | None = None
    suspended_at: datetime | None = None


class Transition(BaseModel):
    """A status change the engine wants to apply to one subscription."""

    model_config = ConfigDict(frozen=True)

    from_status: SubscriptionStatus
    to_status: SubscriptionStatus
    updates: dict[str, datetime | None] = Field(default_factory=dict)
    reason: str = ""

    @property
    def is_suspension(self) -> bool:
        return self.to_status == SubscriptionStatus.SUSPENDED


class Evaluation(BaseModel):
    """Outcome of evaluating a subscription against the lifecycle rules."""

    subscription_id: str
    transition: Transition | None = None
    reminder: Reminder | None = None
    suspension_date: datetime | None = None

    @property
    def changes_status(self) -> bool:
        return self.transition is not None


class AccessStatus(BaseModel):
    """Whether a branch may keep operating, and what to tell its users."""

    status: SubscriptionStatus
    can_operate: bool
    is_in_grace_period: bool
    should_show_reminder: bool
    days_until_suspension: int
    message: str
