"""Endpoints for the subscription processing job.

``POST /jobs/process-subscriptions`` runs the job immediately (cron callers
and manual runs).  ``GET`` returns the job's scheduling bookkeeping.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from subscription_engine.state.repository import ScheduledJobRepository

from api.dependencies import AdminSessionDep, ProcessorDep, SettingsDep, UserDep
from api.middleware.rbac import Permission, Role, require_permission
from api.services.subscription_processor import JOB_NAME

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


class ProcessSubscriptionsRequest(BaseModel):
    """Optional body for a processing run."""

    manual: bool = Field(False, description="Whether the run was triggered by hand.")
    email: EmailStr | None = Field(
        None,
        description="Send every notification of this run to this address instead of the resolved recipients.",
    )


@router.post("/process-subscriptions")
async def process_subscriptions(
    processor: ProcessorDep,
    user: UserDep,
    body: ProcessSubscriptionsRequest | None = None,
    _role: Role = Depends(require_permission(Permission.RUN_BILLING_JOBS)),
) -> dict[str, Any]:
    """Run the subscription lifecycle job now and return its counters."""
    body = body or ProcessSubscriptionsRequest()
    logger.info("Subscription processing requested by %s (manual=%s)", user, body.manual)
    result = await processor.run(manual=body.manual, recipient_override=body.email)
    return result.model_dump(by_alias=True)


@router.get("/process-subscriptions")
async def get_process_subscriptions_job(
    session: AdminSessionDep,
    settings: SettingsDep,
    _role: Role = Depends(require_permission(Permission.RUN_BILLING_JOBS)),
) -> dict[str, Any]:
    """Return the job's cron expression and last/next run times."""
    job = await ScheduledJobRepository(session).get(JOB_NAME)
    if job is None:
        return {
            "job_name": JOB_NAME,
            "cron_expression": settings.scheduler_cron,
            "is_enabled": True,
            "last_run_at": None,
            "next_run_at": None,
            "scheduler_enabled": settings.scheduler_enabled,
        }
    return {
        "job_name": job.job_name,
        "cron_expression": job.cron_expression,
        "is_enabled": job.is_enabled,
        "last_run_at": job.last_run_at.isoformat() if job.last_run_at else None,
        "next_run_at": job.next_run_at.isoformat() if job.next_run_at else None,
        "scheduler_enabled": settings.scheduler_enabled,
    }
