"""Repository classes providing access to the billing state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
calling ``session.commit()`` (or relying on the ``get_session`` context
manager).

Status changes are issued as conditional ``UPDATE ... WHERE status = :expected``
statements and report whether a row was changed, so two concurrent writers
can never both apply the same transition.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.models import (
    EVALUABLE_STATUSES,
    NOTIFICATION_CHANNEL_EMAIL,
    NotificationStatus,
    PaymentMethod,
    PaymentStatus,
    SubscriptionStatus,
)
from subscription_engine.state.tables import (
    BranchSubscriptionTable,
    BranchTable,
    LaundryTable,
    ProfileTable,
    ScheduledJobTable,
    SubscriptionNotificationTable,
    SubscriptionPaymentTable,
    SubscriptionPlanTable,
)

logger = logging.getLogger(__name__)

_MAX_PAGE_SIZE = 1000


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Reads and status-guarded writes for ``branch_subscriptions``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, subscription_id: str) -> BranchSubscriptionTable | None:
        """Fetch a subscription by id."""
        return await self._session.get(BranchSubscriptionTable, subscription_id)

    async def get_for_branch(self, branch_id: str) -> BranchSubscriptionTable | None:
        """Fetch the subscription of *branch_id*, if one exists."""
        stmt = select(BranchSubscriptionTable).where(BranchSubscriptionTable.branch_id == branch_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def evaluable_page(
        self,
        *,
        after_id: str | None = None,
        limit: int = 200,
    ) -> list[BranchSubscriptionTable]:
        """Return the next page of subscriptions the batch processor evaluates.

        Keyset pagination ordered by id: pass the last id of the previous
        page as *after_id*.  Rows transitioned while paging are not skipped
        because the key never changes.
        """
        limit = max(1, min(limit, _MAX_PAGE_SIZE))
        stmt = select(BranchSubscriptionTable).where(
            BranchSubscriptionTable.status.in_([s.value for s in EVALUABLE_STATUSES])
        )
        if after_id is not None:
            stmt = stmt.where(BranchSubscriptionTable.id > after_id)
        stmt = stmt.order_by(BranchSubscriptionTable.id).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def transition(
        self,
        subscription_id: str,
        *,
        expected_status: SubscriptionStatus,
        new_status: SubscriptionStatus,
        updates: dict[str, Any],
        now: datetime,
    ) -> bool:
        """Move a subscription from *expected_status* to *new_status*.

        Returns ``False`` when the row no longer has *expected_status*
        (another writer got there first), in which case nothing changes.
        """
        values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
        values.update(updates)
        stmt = (
            update(BranchSubscriptionTable)
            .where(
                BranchSubscriptionTable.id == subscription_id,
                BranchSubscriptionTable.status == expected_status.value,
            )
            .values(**values)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def activate_paid_period(
        self,
        subscription_id: str,
        *,
        period_start: datetime,
        period_end: datetime,
    ) -> bool:
        """Mark a subscription active for a freshly paid period.

        Clears ``past_due_since``.  ``suspended_at`` is kept as history.
        """
        stmt = (
            update(BranchSubscriptionTable)
            .where(BranchSubscriptionTable.id == subscription_id)
            .values(
                status=SubscriptionStatus.ACTIVE.value,
                current_period_start=period_start,
                current_period_end=period_end,
                past_due_since=None,
                last_payment_at=period_start,
                updated_at=period_start,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def create_trial(
        self,
        *,
        branch_id: str,
        laundry_id: str,
        plan_id: str | None,
        billing_interval: str,
        trial_ends_at: datetime,
        now: datetime,
    ) -> BranchSubscriptionTable:
        """Insert a new subscription in ``trial`` and return the persisted row."""
        row = BranchSubscriptionTable(
            branch_id=branch_id,
            laundry_id=laundry_id,
            plan_id=plan_id,
            status=SubscriptionStatus.TRIAL.value,
            billing_interval=billing_interval,
            trial_ends_at=trial_ends_at,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def cancel(self, subscription_id: str, *, now: datetime) -> bool:
        """Cancel a subscription.  Returns ``False`` if it was already cancelled."""
        stmt = (
            update(BranchSubscriptionTable)
            .where(
                BranchSubscriptionTable.id == subscription_id,
                BranchSubscriptionTable.status != SubscriptionStatus.CANCELLED.value,
            )
            .values(status=SubscriptionStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_overview(
        self,
        *,
        status: SubscriptionStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Return subscriptions with their branch, laundry and plan names."""
        limit = max(1, min(limit, _MAX_PAGE_SIZE))
        stmt = (
            select(
                BranchSubscriptionTable,
                BranchTable.name.label("branch_name"),
                LaundryTable.name.label("laundry_name"),
                SubscriptionPlanTable.name.label("plan_name"),
            )
            .join(BranchTable, BranchTable.id == BranchSubscriptionTable.branch_id)
            .join(LaundryTable, LaundryTable.id == BranchSubscriptionTable.laundry_id)
            .outerjoin(SubscriptionPlanTable, SubscriptionPlanTable.id == BranchSubscriptionTable.plan_id)
        )
        if status is not None:
            stmt = stmt.where(BranchSubscriptionTable.status == status.value)
        stmt = (
            stmt.order_by(LaundryTable.name, BranchTable.name)
            .limit(limit)
            .offset(max(offset, 0))
        )
        result = await self._session.execute(stmt)
        return [
            {
                "subscription": row[0],
                "branch_name": row.branch_name,
                "laundry_name": row.laundry_name,
                "plan_name": row.plan_name,
            }
            for row in result.all()
        ]

    async def count_by_status(self) -> dict[str, int]:
        """Return the number of subscriptions per status."""
        stmt = select(BranchSubscriptionTable.status, func.count()).group_by(BranchSubscriptionTable.status)
        result = await self._session.execute(stmt)
        return {status: count for status, count in result.all()}


# ---------------------------------------------------------------------------
# PlanRepository
# ---------------------------------------------------------------------------


class PlanRepository:
    """Read access to ``subscription_plans``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, plan_id: str) -> SubscriptionPlanTable | None:
        return await self._session.get(SubscriptionPlanTable, plan_id)

    async def get_default(self) -> SubscriptionPlanTable | None:
        """Return the cheapest active plan, used when provisioning without a plan."""
        stmt = (
            select(SubscriptionPlanTable)
            .where(SubscriptionPlanTable.is_active.is_(True))
            .order_by(SubscriptionPlanTable.price_monthly, SubscriptionPlanTable.name)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active(self) -> list[SubscriptionPlanTable]:
        stmt = (
            select(SubscriptionPlanTable)
            .where(SubscriptionPlanTable.is_active.is_(True))
            .order_by(SubscriptionPlanTable.price_monthly)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PaymentRepository
# ---------------------------------------------------------------------------


class PaymentRepository:
    """Receipts and review decisions in ``subscription_payments``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_receipt(
        self,
        *,
        subscription_id: str,
        branch_id: str,
        laundry_id: str,
        currency: str,
        receipt_url: str,
        uploaded_by: str | None,
        notes: str | None,
        now: datetime,
    ) -> SubscriptionPaymentTable:
        """Record an uploaded bank-transfer receipt awaiting review.

        The amount stays ``0`` until a reviewer confirms it.
        """
        row = SubscriptionPaymentTable(
            subscription_id=subscription_id,
            branch_id=branch_id,
            laundry_id=laundry_id,
            amount=Decimal("0"),
            currency=currency,
            payment_method=PaymentMethod.BANK_TRANSFER.value,
            status=PaymentStatus.PENDING.value,
            receipt_url=receipt_url,
            receipt_uploaded_at=now,
            uploaded_by=uploaded_by,
            notes=notes,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, payment_id: str) -> SubscriptionPaymentTable | None:
        return await self._session.get(SubscriptionPaymentTable, payment_id)

    async def list_pending_reviews(self, *, limit: int = 100) -> list[dict[str, Any]]:
        """Pending payments that carry a receipt, newest first.

        Each item holds the payment row plus the branch name, laundry name
        and the uploader's name (``None`` when the profile is gone).
        """
        limit = max(1, min(limit, _MAX_PAGE_SIZE))
        stmt = (
            select(
                SubscriptionPaymentTable,
                BranchTable.name.label("branch_name"),
                LaundryTable.name.label("laundry_name"),
                ProfileTable.name.label("uploader_name"),
            )
            .join(BranchTable, BranchTable.id == SubscriptionPaymentTable.branch_id)
            .join(LaundryTable, LaundryTable.id == SubscriptionPaymentTable.laundry_id)
            .outerjoin(ProfileTable, ProfileTable.id == SubscriptionPaymentTable.uploaded_by)
            .where(
                SubscriptionPaymentTable.status == PaymentStatus.PENDING.value,
                SubscriptionPaymentTable.receipt_url.is_not(None),
            )
            .order_by(SubscriptionPaymentTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [
            {
                "payment": row[0],
                "branch_name": row.branch_name,
                "laundry_name": row.laundry_name,
                "uploader_name": row.uploader_name,
            }
            for row in result.all()
        ]

    async def mark_completed(
        self,
        payment_id: str,
        *,
        amount: Decimal,
        reviewer_id: str,
        reviewed_at: datetime,
        admin_notes: str | None = None,
    ) -> bool:
        """Complete a pending payment.  Returns ``False`` if it is not pending."""
        stmt = (
            update(SubscriptionPaymentTable)
            .where(
                SubscriptionPaymentTable.id == payment_id,
                SubscriptionPaymentTable.status == PaymentStatus.PENDING.value,
            )
            .values(
                status=PaymentStatus.COMPLETED.value,
                amount=amount,
                reviewed_by=reviewer_id,
                reviewed_at=reviewed_at,
                admin_notes=admin_notes,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def mark_failed(
        self,
        payment_id: str,
        *,
        reason: str,
        reviewer_id: str,
        reviewed_at: datetime,
    ) -> bool:
        """Reject a pending payment.  Returns ``False`` if it is not pending."""
        stmt = (
            update(SubscriptionPaymentTable)
            .where(
                SubscriptionPaymentTable.id == payment_id,
                SubscriptionPaymentTable.status == PaymentStatus.PENDING.value,
            )
            .values(
                status=PaymentStatus.FAILED.value,
                admin_notes=reason,
                reviewed_by=reviewer_id,
                reviewed_at=reviewed_at,
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_for_subscription(self, subscription_id: str, *, limit: int = 100) -> list[SubscriptionPaymentTable]:
        stmt = (
            select(SubscriptionPaymentTable)
            .where(SubscriptionPaymentTable.subscription_id == subscription_id)
            .order_by(SubscriptionPaymentTable.created_at.desc())
            .limit(max(1, min(limit, _MAX_PAGE_SIZE)))
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# NotificationRepository
# ---------------------------------------------------------------------------


class NotificationRepository:
    """Audit records in ``subscription_notifications``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def exists_since(self, subscription_id: str, notification_type: str, since: datetime) -> bool:
        """Whether a notification of this type was recorded at or after *since*.

        Pending (undelivered) records count too, so a failed send is not
        retried within the dedup window.
        """
        stmt = (
            select(SubscriptionNotificationTable.id)
            .where(
                SubscriptionNotificationTable.subscription_id == subscription_id,
                SubscriptionNotificationTable.notification_type == notification_type,
                SubscriptionNotificationTable.created_at >= since,
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.first() is not None

    async def create_pending(
        self,
        *,
        subscription_id: str,
        branch_id: str | None,
        notification_type: str,
        recipient_email: str,
        subject: str,
        body: str,
        now: datetime,
        channel: str = NOTIFICATION_CHANNEL_EMAIL,
    ) -> SubscriptionNotificationTable:
        row = SubscriptionNotificationTable(
            subscription_id=subscription_id,
            branch_id=branch_id,
            notification_type=notification_type,
            channel=channel,
            recipient_email=recipient_email,
            subject=subject,
            body=body,
            status=NotificationStatus.PENDING.value,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def mark_sent(self, notification_id: str, *, sent_at: datetime) -> bool:
        stmt = (
            update(SubscriptionNotificationTable)
            .where(SubscriptionNotificationTable.id == notification_id)
            .values(status=NotificationStatus.SENT.value, sent_at=sent_at)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def list_for_subscription(
        self, subscription_id: str, *, limit: int = 100
    ) -> list[SubscriptionNotificationTable]:
        stmt = (
            select(SubscriptionNotificationTable)
            .where(SubscriptionNotificationTable.subscription_id == subscription_id)
            .order_by(SubscriptionNotificationTable.created_at.desc())
            .limit(max(1, min(limit, _MAX_PAGE_SIZE)))
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# ScheduledJobRepository
# ---------------------------------------------------------------------------


class ScheduledJobRepository:
    """Bookkeeping rows in ``scheduled_jobs``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, job_name: str) -> ScheduledJobTable | None:
        stmt = select(ScheduledJobTable).where(ScheduledJobTable.job_name == job_name)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure(self, job_name: str, *, cron_expression: str) -> ScheduledJobTable:
        """Return the job row, creating it with *cron_expression* if missing."""
        row = await self.get(job_name)
        if row is not None:
            return row
        row = ScheduledJobTable(job_name=job_name, cron_expression=cron_expression)
        self._session.add(row)
        await self._session.flush()
        logger.info("Registered scheduled job %s (%s)", job_name, cron_expression)
        return row

    async def update_last_run(self, job_name: str, *, last_run_at: datetime, next_run_at: datetime) -> bool:
        stmt = (
            update(ScheduledJobTable)
            .where(ScheduledJobTable.job_name == job_name)
            .values(last_run_at=last_run_at, next_run_at=next_run_at, updated_at=last_run_at)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# RecipientRepository
# ---------------------------------------------------------------------------


class RecipientRepository:
    """Look-ups for who receives billing notices about a branch."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_branch_context(self, branch_id: str) -> dict[str, Any] | None:
        """Return branch name, laundry id/name and laundry contact email."""
        stmt = (
            select(
                BranchTable.name.label("branch_name"),
                LaundryTable.id.label("laundry_id"),
                LaundryTable.name.label("laundry_name"),
                LaundryTable.email.label("laundry_email"),
            )
            .join(LaundryTable, LaundryTable.id == BranchTable.laundry_id)
            .where(BranchTable.id == branch_id)
        )
        result = await self._session.execute(stmt)
        row = result.first()
        if row is None:
            return None
        return dict(row._mapping)

    async def branch_profile_emails(self, branch_id: str, *, roles: Sequence[str] | None = None) -> list[str]:
        """Emails of active profiles attached to *branch_id*, optionally by role."""
        stmt = select(ProfileTable.email).where(
            ProfileTable.branch_id == branch_id,
            ProfileTable.is_active.is_(True),
            ProfileTable.email.is_not(None),
        )
        if roles:
            stmt = stmt.where(ProfileTable.role.in_(list(roles)))
        stmt = stmt.order_by(ProfileTable.created_at, ProfileTable.id)
        result = await self._session.execute(stmt)
        return [email for email in result.scalars().all() if email]
