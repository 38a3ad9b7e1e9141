"""Shared FastAPI dependencies.

Process-wide resources (engine, session factory, email client) are set
up by the application lifespan through the ``init_*`` functions and torn
down by the matching ``dispose_*`` ones.  Everything else is built per
request from those.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from subscription_engine.config import LifecyclePolicy, load_engine_settings
from subscription_engine.state import database

from api.config import APISettings, load_api_settings
from api.middleware.rbac import Permission, get_user_role, role_has_permission
from api.services.email_client import EmailClient
from api.services.notification_templates import NotificationTemplates
from api.services.subscription_processor import SubscriptionProcessor

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_email_client: EmailClient | None = None


# -- configuration -----------------------------------------------------------


@lru_cache(maxsize=1)
def get_settings() -> APISettings:
    return load_api_settings()


def get_policy() -> LifecyclePolicy:
    """Grace period, trial length and reminder thresholds from ``BILLING_*``."""
    return load_engine_settings().to_policy()


SettingsDep = Annotated[APISettings, Depends(get_settings)]
PolicyDep = Annotated[LifecyclePolicy, Depends(get_policy)]


# -- database ----------------------------------------------------------------


def init_engine(settings: APISettings) -> AsyncEngine:
    global _engine  # noqa: PLW0603
    _engine = database.get_engine(settings.database_url)
    return _engine


async def dispose_engine() -> None:
    global _engine  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for code that manages its own sessions (processor, scheduler)."""
    if _engine is None:
        raise RuntimeError("init_engine() has not been called; the database is not available")
    return database.get_session_factory(_engine)


@asynccontextmanager
async def _unit_of_work(tenant_id: str | None) -> AsyncGenerator[AsyncSession, None]:
    async with get_session_factory()() as session:
        try:
            if tenant_id is not None:
                await database.set_tenant_context(session, tenant_id)
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def get_tenant_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Session bound to the caller's laundry for Postgres row-level security."""
    async with _unit_of_work(get_tenant_id(request)) as session:
        yield session


async def get_admin_session() -> AsyncGenerator[AsyncSession, None]:
    """Session with no laundry binding.

    Reserved for endpoints guarded by an owner/service permission
    (``VIEW_ALL_SUBSCRIPTIONS``, ``REVIEW_PAYMENTS``, ``RUN_BILLING_JOBS``)
    and for routes that scope rows themselves.
    """
    async with _unit_of_work(None) as session:
        yield session


async def get_reader_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Session for read routes shared by branch users and platform owners.

    Callers holding ``VIEW_ALL_SUBSCRIPTIONS`` get an unbound session so
    row-level security does not hide other laundries from them; everyone
    else is bound to their own laundry.
    """
    if role_has_permission(get_user_role(request), Permission.VIEW_ALL_SUBSCRIPTIONS):
        tenant_id = None
    else:
        tenant_id = get_tenant_id(request)
    async with _unit_of_work(tenant_id) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_tenant_session)]
AdminSessionDep = Annotated[AsyncSession, Depends(get_admin_session)]
ReaderSessionDep = Annotated[AsyncSession, Depends(get_reader_session)]


# -- email -------------------------------------------------------------------


def init_email_client(settings: APISettings) -> EmailClient:
    global _email_client  # noqa: PLW0603
    _email_client = EmailClient(
        api_key=settings.resend_api_key.get_secret_value(),
        sender=settings.email_from,
        base_url=settings.resend_base_url,
        timeout=settings.email_timeout,
    )
    if not _email_client.is_configured:
        logger.warning("API_RESEND_API_KEY is not set; billing emails will be skipped")
    return _email_client


async def dispose_email_client() -> None:
    global _email_client  # noqa: PLW0603
    if _email_client is not None:
        await _email_client.close()
        _email_client = None


def get_email_client() -> EmailClient:
    if _email_client is None:
        raise RuntimeError("init_email_client() has not been called")
    return _email_client


EmailClientDep = Annotated[EmailClient, Depends(get_email_client)]


# -- subscription processing -------------------------------------------------


def build_processor(
    session_factory: async_sessionmaker[AsyncSession],
    email_client: EmailClient,
    settings: APISettings,
) -> SubscriptionProcessor:
    """Wire a processor from ``API_*`` and ``BILLING_*`` settings; shared by the job route and the scheduler."""
    engine_settings = load_engine_settings()
    return SubscriptionProcessor(
        session_factory,
        email_client,
        NotificationTemplates(brand_name=settings.brand_name, app_url=settings.app_url),
        engine_settings.to_policy(),
        page_size=engine_settings.page_size,
        cron_expression=settings.scheduler_cron,
    )


def get_processor(email_client: EmailClientDep, settings: SettingsDep) -> SubscriptionProcessor:
    return build_processor(get_session_factory(), email_client, settings)


ProcessorDep = Annotated[SubscriptionProcessor, Depends(get_processor)]


# -- caller identity (set by AuthenticationMiddleware) ------------------------


def get_tenant_id(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return tenant_id


def get_user_identity(request: Request) -> str:
    return getattr(request.state, "sub", "anonymous")


TenantDep = Annotated[str, Depends(get_tenant_id)]
UserDep = Annotated[str, Depends(get_user_identity)]
