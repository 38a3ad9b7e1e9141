"""ASGI entry-point: ``uvicorn api.main:app``."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine
from subscription_engine.state.sqlite_adapter import create_local_tables

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    build_processor,
    dispose_email_client,
    dispose_engine,
    get_session_factory,
    init_email_client,
    init_engine,
)
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.json_formatter import JSONFormatter
from api.middleware.logging import CORRELATION_HEADER, RequestLoggingMiddleware
from api.routers import health, jobs, payments, subscriptions
from api.services.email_client import EmailClient
from api.services.subscription_processor import JOB_NAME
from api.services.subscription_scheduler import SubscriptionScheduler

logger = logging.getLogger(__name__)


def _use_json_logs() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.INFO)


async def _ensure_tables(settings: APISettings, engine: AsyncEngine) -> None:
    # Deployed Postgres databases are migrated out of band.
    if settings.platform_env == PlatformEnv.DEV or engine.dialect.name == "sqlite":
        await create_local_tables(engine)
        logger.info("Billing tables ensured on %s", engine.dialect.name)


async def _start_scheduler(settings: APISettings, email_client: EmailClient) -> SubscriptionScheduler | None:
    if not settings.scheduler_enabled:
        return None
    session_factory = get_session_factory()
    scheduler = SubscriptionScheduler(
        session_factory,
        build_processor(session_factory, email_client, settings),
        job_name=JOB_NAME,
        cron_expression=settings.scheduler_cron,
        poll_seconds=settings.scheduler_poll_seconds,
    )
    await scheduler.start()
    return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the database and email client, and optionally run the daily job in-process.

    Shutdown stops the scheduler first so no run is cut off mid-batch by
    the engine going away.
    """
    settings = load_api_settings()
    if settings.structured_logging:
        _use_json_logs()

    if settings.platform_env != PlatformEnv.DEV and not os.environ.get("JWT_SECRET"):
        raise RuntimeError(f"JWT_SECRET must be set when API_PLATFORM_ENV={settings.platform_env.value}")

    engine = init_engine(settings)
    await _ensure_tables(settings, engine)
    email_client = init_email_client(settings)
    scheduler = await _start_scheduler(settings, email_client)
    logger.info(
        "Billing API %s started (env=%s, db=%s, scheduler=%s)",
        __version__,
        settings.platform_env.value,
        engine.dialect.name,
        "on" if scheduler else "off",
    )
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await dispose_email_client()
        await dispose_engine()
        logger.info("Billing API stopped")


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValueError)
    async def _bad_input(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("Invalid input on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def _forbidden(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("Forbidden on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def _database_error(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s", request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})


def create_app() -> FastAPI:
    settings = load_api_settings()
    app = FastAPI(
        title="LaundryFlow Billing API",
        description="Branch subscription lifecycle, billing notices and payment review.",
        version=__version__,
        lifespan=lifespan,
    )

    # Starlette runs the last added middleware first: logging wraps auth wraps CORS.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", CORRELATION_HEADER],
        expose_headers=[CORRELATION_HEADER],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    for module in (health, jobs, payments, subscriptions):
        app.include_router(module.router, prefix="/api/v1")
    app.include_router(health.readiness_router)

    _register_error_handlers(app)
    return app


app = create_app()
