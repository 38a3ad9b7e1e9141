"""API router for branch subscriptions.

Branch users check their own branch's access status and history; platform
owners list, provision and cancel subscriptions across laundries.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from subscription_engine.errors import (
    BranchNotFoundError,
    PlanNotFoundError,
    SubscriptionExistsError,
    SubscriptionNotFoundError,
)
from subscription_engine.models import BillingInterval, SubscriptionStatus

from api.dependencies import AdminSessionDep, PolicyDep, ReaderSessionDep, TenantDep
from api.middleware.rbac import Permission, Role, require_permission, role_has_permission
from api.services.payment_service import PaymentReviewService
from api.services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class ProvisionRequest(BaseModel):
    """Start a trial for a branch."""

    branch_id: str = Field(..., min_length=1, max_length=36)
    plan_id: str | None = Field(None, max_length=36, description="Defaults to the cheapest active plan.")
    billing_interval: BillingInterval = BillingInterval.MONTHLY


def _laundry_scope(role: Role, tenant_id: str) -> str | None:
    """Restrict look-ups to the caller's laundry unless they may see all."""
    if role_has_permission(role, Permission.VIEW_ALL_SUBSCRIPTIONS):
        return None
    return tenant_id


@router.get("")
async def list_subscriptions(
    session: AdminSessionDep,
    policy: PolicyDep,
    _role: Role = Depends(require_permission(Permission.VIEW_ALL_SUBSCRIPTIONS)),
    status: SubscriptionStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
) -> dict[str, Any]:
    """All subscriptions with branch/laundry/plan names and counts by status."""
    return await SubscriptionService(session, policy).overview(status, limit=limit, offset=offset)


@router.post("", status_code=201)
async def provision_subscription(
    body: ProvisionRequest,
    session: AdminSessionDep,
    policy: PolicyDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_SUBSCRIPTIONS)),
) -> dict[str, Any]:
    """Create the branch's subscription in ``trial``."""
    service = SubscriptionService(session, policy)
    try:
        return await service.provision_trial(body.branch_id, body.plan_id, body.billing_interval.value)
    except (BranchNotFoundError, PlanNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except SubscriptionExistsError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@router.get("/branch/{branch_id}/status")
async def get_branch_status(
    branch_id: str,
    session: ReaderSessionDep,
    tenant_id: TenantDep,
    policy: PolicyDep,
    role: Role = Depends(require_permission(Permission.READ_SUBSCRIPTION)),
) -> dict[str, Any]:
    """Whether the branch may create orders and register sales."""
    service = SubscriptionService(session, policy)
    try:
        return await service.get_access_status(branch_id, laundry_id=_laundry_scope(role, tenant_id))
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{subscription_id}/cancel")
async def cancel_subscription(
    subscription_id: str,
    session: AdminSessionDep,
    policy: PolicyDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_SUBSCRIPTIONS)),
) -> dict[str, Any]:
    """Cancel the subscription; repeating the call changes nothing."""
    try:
        return await SubscriptionService(session, policy).cancel(subscription_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/{subscription_id}/notifications")
async def list_subscription_notifications(
    subscription_id: str,
    session: ReaderSessionDep,
    tenant_id: TenantDep,
    policy: PolicyDep,
    role: Role = Depends(require_permission(Permission.READ_SUBSCRIPTION)),
    limit: int = Query(100, ge=1, le=500),
) -> list[dict[str, Any]]:
    """Billing notices recorded for the subscription, newest first."""
    service = SubscriptionService(session, policy)
    try:
        return await service.notification_history(
            subscription_id,
            laundry_id=_laundry_scope(role, tenant_id),
            limit=limit,
        )
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/{subscription_id}/payments")
async def list_subscription_payments(
    subscription_id: str,
    session: ReaderSessionDep,
    tenant_id: TenantDep,
    policy: PolicyDep,
    role: Role = Depends(require_permission(Permission.READ_SUBSCRIPTION)),
    limit: int = Query(100, ge=1, le=500),
) -> list[dict[str, Any]]:
    """Payments of the subscription, newest first."""
    try:
        await SubscriptionService(session, policy).ensure_visible(
            subscription_id, laundry_id=_laundry_scope(role, tenant_id)
        )
    except SubscriptionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return await PaymentReviewService(session, policy).list_for_subscription(subscription_id, limit=limit)
