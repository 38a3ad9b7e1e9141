"""API router for bank-transfer receipts and their review."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, StrictFloat, StrictInt, StrictStr
from subscription_engine.errors import (
    PaymentNotFoundError,
    PaymentStateError,
    PaymentValidationError,
    SubscriptionNotFoundError,
)

from api.dependencies import AdminSessionDep, PolicyDep, SessionDep, TenantDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission, role_has_permission
from api.services.payment_service import PaymentReviewService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ReceiptRequest(BaseModel):
    """An uploaded transfer receipt."""

    branch_id: str = Field(..., min_length=1, max_length=36)
    receipt_url: str = Field(..., min_length=1, max_length=2048, description="Reference to the stored receipt.")
    notes: str | None = Field(None, max_length=2000)


class ApproveRequest(BaseModel):
    """Reviewer confirmation of a transfer."""

    amount: StrictInt | StrictFloat | StrictStr = Field(
        ..., description="Amount actually received; must be greater than zero. JSON booleans are rejected."
    )
    notes: str | None = Field(None, max_length=2000)


class RejectRequest(BaseModel):
    """Reviewer rejection of a transfer."""

    reason: str = Field("", max_length=2000, description="Shown to the branch; required.")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/receipts", status_code=201)
async def submit_receipt(
    body: ReceiptRequest,
    session: SessionDep,
    tenant_id: TenantDep,
    user: UserDep,
    policy: PolicyDep,
    role: Role = Depends(require_permission(Permission.SUBMIT_PAYMENTS)),
) -> dict[str, Any]:
    """Record a receipt for the branch's subscription as a pending payment."""
    scope = None if role_has_permission(role, Permission.VIEW_ALL_SUBSCRIPTIONS) else tenant_id
    service = PaymentReviewService(session, policy)
    try:
        return await service.submit_receipt(
            body.branch_id,
            body.receipt_url,
            uploaded_by=user,
            notes=body.notes,
            laundry_id=scope,
        )
    except PaymentValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/pending")
async def list_pending_payments(
    session: AdminSessionDep,
    policy: PolicyDep,
    _role: Role = Depends(require_permission(Permission.REVIEW_PAYMENTS)),
    limit: int = Query(100, ge=1, le=500),
) -> list[dict[str, Any]]:
    """Pending payments with a receipt, newest first."""
    return await PaymentReviewService(session, policy).list_pending_reviews(limit=limit)


@router.post("/{payment_id}/approve")
async def approve_payment(
    payment_id: str,
    body: ApproveRequest,
    session: AdminSessionDep,
    user: UserDep,
    policy: PolicyDep,
    _role: Role = Depends(require_permission(Permission.REVIEW_PAYMENTS)),
) -> dict[str, Any]:
    """Confirm the amount and activate the subscription for a new period."""
    service = PaymentReviewService(session, policy)
    try:
        return await service.approve(payment_id, body.amount, reviewer_id=user, notes=body.notes)
    except PaymentValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except (PaymentNotFoundError, SubscriptionNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PaymentStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.post("/{payment_id}/reject")
async def reject_payment(
    payment_id: str,
    body: RejectRequest,
    session: AdminSessionDep,
    user: UserDep,
    policy: PolicyDep,
    _role: Role = Depends(require_permission(Permission.REVIEW_PAYMENTS)),
) -> dict[str, Any]:
    """Reject the payment with a reason; the subscription is not touched."""
    service = PaymentReviewService(session, policy)
    try:
        return await service.reject(payment_id, body.reason, reviewer_id=user)
    except PaymentValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except PaymentNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except PaymentStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
