"""Branch subscription administration.

Provisioning of trials, the access check used before a branch creates
orders or registers sales, the owner overview, cancellation and the
notification audit trail.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from subscription_engine.config import DEFAULT_POLICY, LifecyclePolicy
from subscription_engine.errors import (
    BranchNotFoundError,
    PlanNotFoundError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
)
from subscription_engine.lifecycle import check_access, ensure_utc, trial_days
from subscription_engine.models import (
    BillingInterval,
    PlanTerms,
    SubscriptionState,
    SubscriptionStatus,
)
from subscription_engine.state.repository import (
    NotificationRepository,
    PlanRepository,
    RecipientRepository,
    SubscriptionRepository,
)
from subscription_engine.state.tables import BranchSubscriptionTable

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def subscription_to_dict(row: BranchSubscriptionTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "branch_id": row.branch_id,
        "laundry_id": row.laundry_id,
        "plan_id": row.plan_id,
        "status": row.status,
        "billing_interval": row.billing_interval,
        "trial_ends_at": _iso(row.trial_ends_at),
        "current_period_start": _iso(row.current_period_start),
        "current_period_end": _iso(row.current_period_end),
        "past_due_since": _iso(row.past_due_since),
        "suspended_at": _iso(row.suspended_at),
        "cancelled_at": _iso(row.cancelled_at),
        "last_payment_at": _iso(row.last_payment_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


class SubscriptionService:
    """Administer branch subscriptions.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    policy:
        Lifecycle policy for trial length and grace defaults.
    """

    def __init__(self, session: AsyncSession, policy: LifecyclePolicy = DEFAULT_POLICY) -> None:
        self._session = session
        self._policy = policy
        self._subscriptions = SubscriptionRepository(session)
        self._plans = PlanRepository(session)
        self._notifications = NotificationRepository(session)
        self._branches = RecipientRepository(session)

    async def _get_scoped(self, subscription_id: str, laundry_id: str | None) -> BranchSubscriptionTable:
        row = await self._subscriptions.get(subscription_id)
        if row is None or (laundry_id is not None and row.laundry_id != laundry_id):
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} not found")
        return row

    async def provision_trial(
        self,
        branch_id: str,
        plan_id: str | None = None,
        billing_interval: str = BillingInterval.MONTHLY.value,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Start a trial for *branch_id* on *plan_id* (or the default plan).

        Raises
        ------
        BranchNotFoundError
            Unknown branch.
        PlanNotFoundError
            *plan_id* does not exist or is inactive.
        SubscriptionExistsError
            The branch already has a subscription.
        ValueError
            Unknown billing interval.
        """
        interval = BillingInterval(billing_interval)

        branch = await self._branches.get_branch_context(branch_id)
        if branch is None:
            raise BranchNotFoundError(f"Branch {branch_id} not found")
        if await self._subscriptions.get_for_branch(branch_id) is not None:
            raise SubscriptionExistsError(branch_id)

        if plan_id is not None:
            plan_row = await self._plans.get(plan_id)
            if plan_row is None or not plan_row.is_active:
                raise PlanNotFoundError(f"Plan {plan_id} not found")
        else:
            plan_row = await self._plans.get_default()

        plan = PlanTerms.model_validate(plan_row) if plan_row is not None else None
        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        trial_ends_at = now + timedelta(days=trial_days(plan, self._policy))

        row = await self._subscriptions.create_trial(
            branch_id=branch_id,
            laundry_id=branch["laundry_id"],
            plan_id=plan.id if plan is not None else None,
            billing_interval=interval.value,
            trial_ends_at=trial_ends_at,
            now=now,
        )
        logger.info(
            "Provisioned trial %s for branch %s (plan=%s, ends=%s)",
            row.id,
            branch_id,
            row.plan_id,
            trial_ends_at.isoformat(),
        )
        return subscription_to_dict(row)

    async def get_access_status(
        self,
        branch_id: str,
        now: datetime | None = None,
        *,
        laundry_id: str | None = None,
    ) -> dict[str, Any]:
        """Whether *branch_id* may keep operating, with a user-facing message."""
        row = await self._subscriptions.get_for_branch(branch_id)
        if row is None or (laundry_id is not None and row.laundry_id != laundry_id):
            raise SubscriptionNotFoundError(f"No subscription for branch {branch_id}")

        plan_row = await self._plans.get(row.plan_id) if row.plan_id is not None else None
        plan = PlanTerms.model_validate(plan_row) if plan_row is not None else None
        now = ensure_utc(now) if now is not None else datetime.now(UTC)

        access = check_access(SubscriptionState.model_validate(row), plan, now, self._policy)
        return {
            "subscription_id": row.id,
            "branch_id": branch_id,
            "plan_name": plan.name if plan is not None else None,
            **access.model_dump(mode="json"),
        }

    async def overview(
        self,
        status: SubscriptionStatus | None = None,
        *,
        limit: int = 100,
        offset: int = 0,
    ) -> dict[str, Any]:
        """All subscriptions with display names, plus counts per status."""
        rows = await self._subscriptions.list_overview(status=status, limit=limit, offset=offset)
        counts = await self._subscriptions.count_by_status()
        return {
            "counts": {s.value: counts.get(s.value, 0) for s in SubscriptionStatus},
            "subscriptions": [
                {
                    **subscription_to_dict(item["subscription"]),
                    "branch_name": item["branch_name"],
                    "laundry_name": item["laundry_name"],
                    "plan_name": item["plan_name"],
                }
                for item in rows
            ],
        }

    async def cancel(self, subscription_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Cancel a subscription.  Cancelling twice keeps the first ``cancelled_at``."""
        row = await self._get_scoped(subscription_id, None)
        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        changed = await self._subscriptions.cancel(subscription_id, now=now)
        if changed:
            logger.info("Subscription %s cancelled", subscription_id)

        await self._session.refresh(row)
        return {"changed": changed, **subscription_to_dict(row)}

    async def notification_history(
        self,
        subscription_id: str,
        *,
        laundry_id: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Notification audit records of a subscription, newest first."""
        await self._get_scoped(subscription_id, laundry_id)
        records = await self._notifications.list_for_subscription(subscription_id, limit=limit)
        return [
            {
                "id": r.id,
                "notification_type": r.notification_type,
                "channel": r.channel,
                "recipient_email": r.recipient_email,
                "subject": r.subject,
                "status": r.status,
                "sent_at": _iso(r.sent_at),
                "created_at": _iso(r.created_at),
            }
            for r in records
        ]

    async def ensure_visible(self, subscription_id: str, *, laundry_id: str | None = None) -> None:
        """Raise :class:`SubscriptionNotFoundError` unless the caller may see it."""
        await self._get_scoped(subscription_id, laundry_id)
