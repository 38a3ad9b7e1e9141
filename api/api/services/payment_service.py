"""Manual bank-transfer payment review.

Branch admins upload a transfer receipt, which is recorded as a ``pending``
payment with amount ``0``.  A platform owner then either approves it with
the confirmed amount, which also activates the subscription for a new paid
period, or rejects it with a reason.

Both review decisions are conditional updates on ``status = 'pending'`` so
a payment can only be reviewed once, even when two reviewers act at the
same moment.  Approval writes the payment and the subscription in the
caller's transaction; if either write fails, neither is kept.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from subscription_engine.config import DEFAULT_POLICY, LifecyclePolicy
from subscription_engine.errors import (
    PaymentNotFoundError,
    PaymentStateError,
    PaymentValidationError,
    SubscriptionNotFoundError,
)
from subscription_engine.lifecycle import ensure_utc
from subscription_engine.models import PaymentStatus
from subscription_engine.state.repository import (
    PaymentRepository,
    PlanRepository,
    SubscriptionRepository,
)
from subscription_engine.state.tables import SubscriptionPaymentTable

logger = logging.getLogger(__name__)

_DEFAULT_CURRENCY = "DOP"

# Matches the Numeric(12, 2) amount column.
_CENT = Decimal("0.01")
_MAX_AMOUNT = Decimal("9999999999.99")


def parse_amount(value: Any) -> Decimal:
    """Return *value* as a positive ``Decimal`` rounded to cents.

    Rounding happens before the range check, so ``"0.001"`` is rejected
    rather than stored as zero.

    Raises
    ------
    PaymentValidationError
        If *value* is not numeric or not finite, or if the rounded amount is
        not greater than zero or does not fit the amount column.
    """
    if isinstance(value, bool):
        raise PaymentValidationError("Amount must be a number")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise PaymentValidationError(f"Invalid amount '{value}'") from exc
    if not amount.is_finite():
        raise PaymentValidationError("Amount must be finite")
    if amount <= 0:
        raise PaymentValidationError("Amount must be greater than zero")
    # Checked before quantize, which cannot represent values this large.
    if amount > _MAX_AMOUNT:
        raise PaymentValidationError(f"Amount must not exceed {_MAX_AMOUNT}")
    amount = amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    if amount == 0:
        raise PaymentValidationError("Amount must be at least 0.01")
    if amount > _MAX_AMOUNT:
        raise PaymentValidationError(f"Amount must not exceed {_MAX_AMOUNT}")
    return amount


def _payment_to_dict(payment: SubscriptionPaymentTable) -> dict[str, Any]:
    return {
        "id": payment.id,
        "subscription_id": payment.subscription_id,
        "branch_id": payment.branch_id,
        "laundry_id": payment.laundry_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "payment_method": payment.payment_method,
        "status": payment.status,
        "receipt_url": payment.receipt_url,
        "receipt_uploaded_at": payment.receipt_uploaded_at.isoformat() if payment.receipt_uploaded_at else None,
        "uploaded_by": payment.uploaded_by,
        "reviewed_by": payment.reviewed_by,
        "reviewed_at": payment.reviewed_at.isoformat() if payment.reviewed_at else None,
        "admin_notes": payment.admin_notes,
        "notes": payment.notes,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }


class PaymentReviewService:
    """Receipt submission and owner review of bank-transfer payments.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    policy:
        Supplies the length of the period an approved payment grants.
    """

    def __init__(self, session: AsyncSession, policy: LifecyclePolicy = DEFAULT_POLICY) -> None:
        self._session = session
        self._policy = policy
        self._payments = PaymentRepository(session)
        self._subscriptions = SubscriptionRepository(session)
        self._plans = PlanRepository(session)

    async def submit_receipt(
        self,
        branch_id: str,
        receipt_url: str,
        uploaded_by: str | None,
        notes: str | None = None,
        now: datetime | None = None,
        *,
        laundry_id: str | None = None,
    ) -> dict[str, Any]:
        """Record an uploaded receipt for the branch's subscription.

        When *laundry_id* is given, the branch must belong to that laundry.
        """
        receipt_url = (receipt_url or "").strip()
        if not receipt_url:
            raise PaymentValidationError("A receipt reference is required")

        subscription = await self._subscriptions.get_for_branch(branch_id)
        if subscription is None or (laundry_id is not None and subscription.laundry_id != laundry_id):
            raise SubscriptionNotFoundError(f"No subscription for branch {branch_id}")

        currency = _DEFAULT_CURRENCY
        if subscription.plan_id is not None:
            plan = await self._plans.get(subscription.plan_id)
            if plan is not None and plan.currency:
                currency = plan.currency

        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        payment = await self._payments.create_receipt(
            subscription_id=subscription.id,
            branch_id=branch_id,
            laundry_id=subscription.laundry_id,
            currency=currency,
            receipt_url=receipt_url,
            uploaded_by=uploaded_by,
            notes=notes,
            now=now,
        )
        logger.info("Receipt %s submitted for branch %s by %s", payment.id, branch_id, uploaded_by)
        return _payment_to_dict(payment)

    async def list_pending_reviews(self, *, limit: int = 100) -> list[dict[str, Any]]:
        """Pending payments with a receipt, newest first, with display names."""
        rows = await self._payments.list_pending_reviews(limit=limit)
        return [
            {
                **_payment_to_dict(row["payment"]),
                "branch_name": row["branch_name"],
                "laundry_name": row["laundry_name"],
                "uploader_name": row["uploader_name"],
            }
            for row in rows
        ]

    async def list_for_subscription(self, subscription_id: str, *, limit: int = 100) -> list[dict[str, Any]]:
        payments = await self._payments.list_for_subscription(subscription_id, limit=limit)
        return [_payment_to_dict(p) for p in payments]

    async def _pending_payment(self, payment_id: str) -> SubscriptionPaymentTable:
        payment = await self._payments.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        if payment.status != PaymentStatus.PENDING.value:
            raise PaymentStateError(payment_id, payment.status)
        return payment

    async def approve(
        self,
        payment_id: str,
        amount: Any,
        reviewer_id: str,
        notes: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Complete the payment and activate its subscription for a new period.

        Raises
        ------
        PaymentValidationError
            Invalid *amount*; nothing is written.
        PaymentNotFoundError
            Unknown *payment_id*.
        PaymentStateError
            The payment was already reviewed.
        SubscriptionNotFoundError
            The payment's subscription no longer exists.  The caller's
            transaction must be rolled back.
        """
        confirmed = parse_amount(amount)
        payment = await self._pending_payment(payment_id)
        subscription_id = payment.subscription_id

        now = ensure_utc(now) if now is not None else datetime.now(UTC)
        period_end = now + timedelta(days=self._policy.approval_period_days)

        completed = await self._payments.mark_completed(
            payment_id,
            amount=confirmed,
            reviewer_id=reviewer_id,
            reviewed_at=now,
            admin_notes=notes,
        )
        if not completed:
            raise PaymentStateError(payment_id, "reviewed")

        activated = await self._subscriptions.activate_paid_period(
            subscription_id,
            period_start=now,
            period_end=period_end,
        )
        if not activated:
            raise SubscriptionNotFoundError(f"Subscription {subscription_id} for payment {payment_id} not found")

        logger.info(
            "Payment %s approved by %s (amount=%s); subscription %s active until %s",
            payment_id,
            reviewer_id,
            confirmed,
            subscription_id,
            period_end.isoformat(),
        )
        return {
            "payment_id": payment_id,
            "subscription_id": subscription_id,
            "status": PaymentStatus.COMPLETED.value,
            "amount": str(confirmed),
            "reviewed_by": reviewer_id,
            "reviewed_at": now.isoformat(),
            "current_period_start": now.isoformat(),
            "current_period_end": period_end.isoformat(),
        }

    async def reject(
        self,
        payment_id: str,
        reason: str,
        reviewer_id: str,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Mark the payment failed.  The subscription is left as it is."""
        reason = (reason or "").strip()
        if not reason:
            raise PaymentValidationError("A rejection reason is required")

        await self._pending_payment(payment_id)
        now = ensure_utc(now) if now is not None else datetime.now(UTC)

        rejected = await self._payments.mark_failed(
            payment_id,
            reason=reason,
            reviewer_id=reviewer_id,
            reviewed_at=now,
        )
        if not rejected:
            raise PaymentStateError(payment_id, "reviewed")

        logger.info("Payment %s rejected by %s: %s", payment_id, reviewer_id, reason)
        return {
            "payment_id": payment_id,
            "status": PaymentStatus.FAILED.value,
            "reason": reason,
            "reviewed_by": reviewer_id,
            "reviewed_at": now.isoformat(),
        }
