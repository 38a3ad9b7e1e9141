"""The initial Alembic revision must build the same schema as the ORM tables."""

from __future__ import annotations

import importlib.util
from pathlib import Path
from types import ModuleType

import pytest
import subscription_engine.state as state_pkg
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect
from subscription_engine.state.tables import Base

_VERSIONS = Path(state_pkg.__file__).parent / "migrations" / "versions"


def _load_revision(filename: str) -> ModuleType:
    spec = importlib.util.spec_from_file_location(f"billing_migration_{filename[:3]}", _VERSIONS / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
    yield eng
    eng.dispose()


def _run(engine, step) -> None:
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            step()


class TestInitialRevision:
    def test_revision_chain(self) -> None:
        initial = _load_revision("001_initial.py")
        rls = _load_revision("002_rls_policies.py")

        assert initial.down_revision is None
        assert rls.down_revision == initial.revision

    def test_upgrade_matches_orm(self, engine) -> None:
        _run(engine, _load_revision("001_initial.py").upgrade)

        inspector = inspect(engine)
        assert set(inspector.get_table_names()) == set(Base.metadata.tables)
        for name, table in Base.metadata.tables.items():
            migrated = {column["name"] for column in inspector.get_columns(name)}
            assert migrated == {column.name for column in table.columns}, name

    def test_indexes_present(self, engine) -> None:
        _run(engine, _load_revision("001_initial.py").upgrade)

        indexes = {ix["name"] for ix in inspect(engine).get_indexes("subscription_notifications")}
        assert "ix_subscription_notifications_dedup" in indexes

    def test_downgrade_drops_everything(self, engine) -> None:
        revision = _load_revision("001_initial.py")
        _run(engine, revision.upgrade)
        _run(engine, revision.downgrade)

        assert inspect(engine).get_table_names() == []

    def test_rls_policies_cover_laundry_tables(self) -> None:
        rls = _load_revision("002_rls_policies.py")

        for table in ("branch_subscriptions", "subscription_payments", "branches", "profiles"):
            assert rls._LAUNDRY_SCOPED[table] == "laundry_id"
            assert "laundry_id" in Base.metadata.tables[table].columns
