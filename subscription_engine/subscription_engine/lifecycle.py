"""Pure subscription lifecycle rules.

Every function here is deterministic: the evaluation time is always passed
in explicitly and nothing touches the database, the clock or the network.
The batch processor feeds rows in, applies the returned transition and
dispatches the returned reminder.

Rules
-----
* ``trial`` whose ``trial_ends_at`` is strictly in the past moves to
  ``past_due`` with ``past_due_since = now``.
* ``past_due`` moves to ``suspended`` once ``now`` exceeds
  ``past_due_since + grace_period_days``.
* ``active`` whose paid period has ended moves to ``past_due`` (optional,
  see :attr:`LifecyclePolicy.expire_active_periods`).
* Nothing here ever produces ``active``; only a reviewed payment does.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

from subscription_engine.config import DEFAULT_POLICY, LifecyclePolicy
from subscription_engine.errors import LifecycleInvariantError
from subscription_engine.models import (
    SUSPENDED_NOTIFICATION,
    AccessStatus,
    Evaluation,
    PlanTerms,
    Reminder,
    SubscriptionState,
    SubscriptionStatus,
    Transition,
    past_due_type,
    trial_ending_type,
)

_SECONDS_PER_DAY = 86_400


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as a timezone-aware UTC datetime.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def days_until(target: datetime, now: datetime) -> int:
    """Whole days from *now* to *target*, rounded up.

    ``days_until(now + 2.1 days, now) == 3`` and a target in the past
    yields zero or a negative number.
    """
    delta = ensure_utc(target) - ensure_utc(now)
    return math.ceil(delta.total_seconds() / _SECONDS_PER_DAY)


def grace_period_days(plan: PlanTerms | None, policy: LifecyclePolicy = DEFAULT_POLICY) -> int:
    """Grace period for *plan*, falling back to the policy default."""
    if plan is None or plan.grace_period_days is None:
        return policy.default_grace_period_days
    return plan.grace_period_days


def trial_days(plan: PlanTerms | None, policy: LifecyclePolicy = DEFAULT_POLICY) -> int:
    """Trial length for *plan*, falling back to the policy default."""
    if plan is None or plan.trial_days is None:
        return policy.default_trial_days
    return plan.trial_days


def suspension_date(
    past_due_since: datetime,
    plan: PlanTerms | None,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> datetime:
    """Moment after which a ``past_due`` subscription is suspended."""
    return ensure_utc(past_due_since) + timedelta(days=grace_period_days(plan, policy))


# ---------------------------------------------------------------------------
# Reminder selection
# ---------------------------------------------------------------------------


def trial_reminder(
    subscription: SubscriptionState,
    now: datetime,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> Reminder | None:
    """Return the trial-ending milestone due today, if any."""
    if subscription.status != SubscriptionStatus.TRIAL or subscription.trial_ends_at is None:
        return None
    remaining = days_until(subscription.trial_ends_at, now)
    if remaining in policy.trial_reminder_days:
        return Reminder(notification_type=trial_ending_type(remaining), days_remaining=remaining)
    return None


def past_due_reminder(
    subscription: SubscriptionState,
    plan: PlanTerms | None,
    now: datetime,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> Reminder | None:
    """Return the past-due milestone due today, if any."""
    if subscription.status != SubscriptionStatus.PAST_DUE or subscription.past_due_since is None:
        return None
    deadline = suspension_date(subscription.past_due_since, plan, policy)
    remaining = days_until(deadline, now)
    if 0 < remaining <= policy.past_due_reminder_window_days:
        return Reminder(notification_type=past_due_type(remaining), days_remaining=remaining)
    return None


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate_subscription(
    subscription: SubscriptionState,
    plan: PlanTerms | None,
    now: datetime,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> Evaluation:
    """Decide the next state of *subscription* at time *now*.

    Parameters
    ----------
    subscription:
        Current snapshot of the subscription row.
    plan:
        The subscription's plan, or ``None`` if the reference is missing.
    now:
        Evaluation time.  Also used as the value of any timestamp the
        transition sets (``past_due_since``, ``suspended_at``).
    policy:
        Reminder offsets, grace defaults and feature switches.

    Returns
    -------
    Evaluation
        At most one transition and at most one reminder.  A transition to
        ``suspended`` carries the ``suspended`` notice as its reminder.

    Raises
    ------
    LifecycleInvariantError
        If the row lacks the timestamp its status requires.
    """
    now = ensure_utc(now)
    status = subscription.status

    if status == SubscriptionStatus.TRIAL:
        return _evaluate_trial(subscription, now, policy)
    if status == SubscriptionStatus.PAST_DUE:
        return _evaluate_past_due(subscription, plan, now, policy)
    if status == SubscriptionStatus.ACTIVE:
        return _evaluate_active(subscription, now, policy)

    # suspended / cancelled: terminal as far as the engine is concerned.
    return Evaluation(subscription_id=subscription.id)


def _evaluate_trial(
    subscription: SubscriptionState,
    now: datetime,
    policy: LifecyclePolicy,
) -> Evaluation:
    if subscription.trial_ends_at is None:
        raise LifecycleInvariantError(subscription.id, "status 'trial' requires trial_ends_at")

    if ensure_utc(subscription.trial_ends_at) < now:
        return Evaluation(
            subscription_id=subscription.id,
            transition=Transition(
                from_status=SubscriptionStatus.TRIAL,
                to_status=SubscriptionStatus.PAST_DUE,
                updates={"past_due_since": now},
                reason="trial expired",
            ),
        )

    return Evaluation(
        subscription_id=subscription.id,
        reminder=trial_reminder(subscription, now, policy),
    )


def _evaluate_past_due(
    subscription: SubscriptionState,
    plan: PlanTerms | None,
    now: datetime,
    policy: LifecyclePolicy,
) -> Evaluation:
    if subscription.past_due_since is None:
        raise LifecycleInvariantError(subscription.id, "status 'past_due' requires past_due_since")

    deadline = suspension_date(subscription.past_due_since, plan, policy)
    if now > deadline:
        return Evaluation(
            subscription_id=subscription.id,
            transition=Transition(
                from_status=SubscriptionStatus.PAST_DUE,
                to_status=SubscriptionStatus.SUSPENDED,
                updates={"suspended_at": now},
                reason="grace period exhausted",
            ),
            reminder=Reminder(notification_type=SUSPENDED_NOTIFICATION),
            suspension_date=deadline,
        )

    return Evaluation(
        subscription_id=subscription.id,
        reminder=past_due_reminder(subscription, plan, now, policy),
        suspension_date=deadline,
    )


def _evaluate_active(
    subscription: SubscriptionState,
    now: datetime,
    policy: LifecyclePolicy,
) -> Evaluation:
    period_end = subscription.current_period_end
    if policy.expire_active_periods and period_end is not None and ensure_utc(period_end) < now:
        return Evaluation(
            subscription_id=subscription.id,
            transition=Transition(
                from_status=SubscriptionStatus.ACTIVE,
                to_status=SubscriptionStatus.PAST_DUE,
                updates={"past_due_since": now},
                reason="paid period ended",
            ),
        )
    return Evaluation(subscription_id=subscription.id)


# ---------------------------------------------------------------------------
# Access check
# ---------------------------------------------------------------------------


def check_access(
    subscription: SubscriptionState,
    plan: PlanTerms | None,
    now: datetime,
    policy: LifecyclePolicy = DEFAULT_POLICY,
) -> AccessStatus:
    """Tell whether the branch behind *subscription* may keep operating.

    Suspended and cancelled branches cannot create orders or register
    sales.  Past-due branches can, but should be reminded to pay.
    """
    now = ensure_utc(now)
    status = subscription.status

    if status == SubscriptionStatus.SUSPENDED:
        return AccessStatus(
            status=status,
            can_operate=False,
            is_in_grace_period=False,
            should_show_reminder=True,
            days_until_suspension=0,
            message="Servicio suspendido por falta de pago. Realiza el pago para reactivarlo.",
        )

    if status == SubscriptionStatus.CANCELLED:
        return AccessStatus(
            status=status,
            can_operate=False,
            is_in_grace_period=False,
            should_show_reminder=True,
            days_until_suspension=0,
            message="Suscripción cancelada.",
        )

    if status == SubscriptionStatus.PAST_DUE:
        remaining = 0
        if subscription.past_due_since is not None:
            deadline = suspension_date(subscription.past_due_since, plan, policy)
            remaining = max(days_until(deadline, now), 0)
        return AccessStatus(
            status=status,
            can_operate=True,
            is_in_grace_period=True,
            should_show_reminder=True,
            days_until_suspension=remaining,
            message=f"Pago vencido. El servicio será suspendido en {remaining} día(s).",
        )

    if status == SubscriptionStatus.TRIAL:
        remaining = 0
        if subscription.trial_ends_at is not None:
            remaining = max(days_until(subscription.trial_ends_at, now), 0)
        return AccessStatus(
            status=status,
            can_operate=True,
            is_in_grace_period=False,
            should_show_reminder=False,
            days_until_suspension=remaining + grace_period_days(plan, policy),
            message=f"Período de prueba: quedan {remaining} día(s).",
        )

    return AccessStatus(
        status=status,
        can_operate=True,
        is_in_grace_period=False,
        should_show_reminder=False,
        days_until_suspension=0,
        message="Suscripción activa.",
    )
