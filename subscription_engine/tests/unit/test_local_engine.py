"""Tests for engine creation, session scoping and tenant context binding."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select, text
from subscription_engine.state.database import get_engine, get_session, set_tenant_context
from subscription_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from subscription_engine.state.tables import LaundryTable


class TestLocalEngine:
    """SQLite engine dispatch and table creation."""

    @pytest.mark.asyncio
    async def test_sqlite_url_dispatches_to_local_engine(self, tmp_path):
        db_file = tmp_path / "nested" / "billing.db"
        engine = get_engine(f"sqlite+aiosqlite:///{db_file}")
        try:
            assert engine.dialect.name == "sqlite"
            assert db_file.parent.is_dir()
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_pragmas_enable_foreign_keys(self, tmp_path):
        engine = get_local_engine(tmp_path / "billing.db")
        try:
            async with engine.connect() as conn:
                result = await conn.execute(text("PRAGMA foreign_keys"))
                assert result.scalar() == 1
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_create_local_tables_is_idempotent(self, tmp_path):
        engine = get_local_engine(tmp_path / "billing.db")
        try:
            await create_local_tables(engine)
            await create_local_tables(engine)
            async with get_session(engine) as session:
                session.add(LaundryTable(id="l-1", name="Sol"))
            async with get_session(engine) as session:
                rows = (await session.execute(select(LaundryTable))).scalars().all()
                assert [row.id for row in rows] == ["l-1"]
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_get_session_rolls_back_on_error(self, tmp_path):
        engine = get_local_engine(tmp_path / "billing.db")
        try:
            await create_local_tables(engine)
            with pytest.raises(RuntimeError):
                async with get_session(engine) as session:
                    session.add(LaundryTable(id="l-1", name="Sol"))
                    await session.flush()
                    raise RuntimeError("boom")
            async with get_session(engine) as session:
                rows = (await session.execute(select(LaundryTable))).scalars().all()
                assert rows == []
        finally:
            await engine.dispose()


class TestTenantContext:
    """RLS tenant binding."""

    def _pg_session(self) -> AsyncMock:
        session = AsyncMock()
        bind = MagicMock()
        bind.dialect.name = "postgresql"
        session.get_bind = MagicMock(return_value=bind)
        return session

    @pytest.mark.asyncio
    async def test_sqlite_is_noop(self):
        session = AsyncMock()
        bind = MagicMock()
        bind.dialect.name = "sqlite"
        session.get_bind = MagicMock(return_value=bind)
        await set_tenant_context(session, "laundry-1")
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_postgres_binds_with_parameter(self):
        session = self._pg_session()
        await set_tenant_context(session, "laundry-1")
        session.execute.assert_awaited_once()
        args = session.execute.await_args.args
        assert "set_config('app.tenant_id'" in str(args[0])
        assert args[1] == {"tid": "laundry-1"}

    @pytest.mark.asyncio
    async def test_rejects_unsafe_tenant_id(self):
        session = self._pg_session()
        with pytest.raises(ValueError, match="Invalid tenant_id"):
            await set_tenant_context(session, "x'; DROP TABLE laundries; --")
        session.execute.assert_not_awaited()
