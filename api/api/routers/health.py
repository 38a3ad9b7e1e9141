"""Health-check and readiness probe endpoints.

``/api/v1/health`` is the liveness check.  ``/ready`` is registered at the
application root so orchestrators can gate traffic independently of the API
version.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api import __version__
from api.dependencies import AdminSessionDep, EmailClientDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _db_ok(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("DB health check failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health(session: AdminSessionDep, email_client: EmailClientDep) -> dict[str, Any]:
    """Always 200; ``db`` and ``email`` report downstream state."""
    return {
        "status": "healthy",
        "version": __version__,
        "db": "ok" if await _db_ok(session) else "degraded",
        "email": "ok" if email_client.is_configured else "not_configured",
    }


readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness_probe(session: AdminSessionDep, email_client: EmailClientDep) -> JSONResponse:
    """Readiness probe.

    503 ``not_ready`` when the database is unreachable.  A missing email
    provider key only degrades readiness, because lifecycle transitions
    still run without it.
    """
    checks = {"db": "ok", "email": "ok"}
    overall = "ready"

    if not await _db_ok(session):
        checks["db"] = "unavailable"
        overall = "not_ready"

    if not email_client.is_configured:
        checks["email"] = "not_configured"
        if overall == "ready":
            overall = "degraded"

    return JSONResponse(
        status_code=503 if overall == "not_ready" else 200,
        content={"status": overall, "version": __version__, "checks": checks},
    )
