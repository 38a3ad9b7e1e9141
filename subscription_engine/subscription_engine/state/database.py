"""Engine and session helpers for the billing store.

``get_engine`` picks the backend from the URL: ``postgresql+asyncpg://``
gets a pooled engine with server-side timeouts, ``sqlite+aiosqlite://``
is handed to :mod:`subscription_engine.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

logger = logging.getLogger(__name__)

_SAFE_TENANT_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")

# Postgres timeouts, in milliseconds.
_SERVER_SETTINGS = {"statement_timeout": "30000", "lock_timeout": "10000"}

_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Build the async engine for *database_url*.

    ``pool_size`` and ``max_overflow`` only apply to PostgreSQL.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        from subscription_engine.state.sqlite_adapter import get_local_engine

        return get_local_engine(url.database or ":memory:")

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": dict(_SERVER_SETTINGS)},
    )
    logger.info("Postgres engine ready host=%s db=%s pool=%d+%d", url.host, url.database, pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """One ``async_sessionmaker`` per engine; objects stay loaded after commit."""
    try:
        return _factories[id(engine)]
    except KeyError:
        factory = _factories[id(engine)] = async_sessionmaker(engine, expire_on_commit=False)
        return factory


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Expose *tenant_id* as ``app.tenant_id`` to Postgres row-level security policies.

    The setting is transaction-local.  SQLite has no RLS, so nothing is
    executed there.

    Raises
    ------
    ValueError
        If *tenant_id* is not a plain identifier.
    """
    if session.get_bind().dialect.name == "sqlite":
        return

    if not _SAFE_TENANT_ID.fullmatch(tenant_id):
        raise ValueError(f"Invalid tenant_id {tenant_id!r}: expected {_SAFE_TENANT_ID.pattern}")

    await session.execute(text("SELECT set_config('app.tenant_id', :tid, true)"), {"tid": tenant_id})


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Unit of work: commit when the block exits cleanly, roll back otherwise."""
    async with get_session_factory(engine)() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()
