"""Row-level security on laundry-owned tables.

Branch-facing sessions bind ``app.tenant_id`` with ``set_tenant_context``
and only see rows of their laundry.  Sessions that never bind it (the
billing job, owner endpoints, probes) are not filtered; access to those
is enforced by the API permission guards.

Revision ID: 002
Revises: 001
Create Date: 2024-01-08 00:10:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op

revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# table -> column holding the owning laundry
_LAUNDRY_SCOPED: dict[str, str] = {
    "laundries": "id",
    "branches": "laundry_id",
    "profiles": "laundry_id",
    "branch_subscriptions": "laundry_id",
    "subscription_payments": "laundry_id",
}

# An unset setting reads back as NULL, or '' once a transaction-local value has been discarded.
_UNBOUND = "coalesce(current_setting('app.tenant_id', true), '') = ''"


def upgrade() -> None:
    for table, column in _LAUNDRY_SCOPED.items():
        predicate = f"{_UNBOUND} OR {column} = current_setting('app.tenant_id', true)"
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"CREATE POLICY laundry_isolation_{table} ON {table} USING ({predicate}) WITH CHECK ({predicate})")


def downgrade() -> None:
    for table in _LAUNDRY_SCOPED:
        op.execute(f"DROP POLICY IF EXISTS laundry_isolation_{table} ON {table}")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
