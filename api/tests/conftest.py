"""Shared fixtures for billing API tests.

Provides dev-mode auth tokens, mock sessions and collaborators for router
tests, and a seeded on-disk SQLite database for service tests.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set JWT_SECRET env var BEFORE importing application modules so the
# AuthenticationMiddleware picks up a deterministic secret.
_TEST_JWT_SECRET = "test-secret-key-for-laundryflow-tests"
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

from subscription_engine.config import DEFAULT_POLICY
from subscription_engine.models import SubscriptionStatus
from subscription_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from subscription_engine.state.tables import (
    BranchSubscriptionTable,
    BranchTable,
    LaundryTable,
    ProfileTable,
    SubscriptionPlanTable,
)

from api.config import APISettings
from api.dependencies import (
    get_admin_session,
    get_email_client,
    get_policy,
    get_processor,
    get_reader_session,
    get_settings,
    get_tenant_session,
)
from api.main import create_app
from api.services.email_client import DeliveryResult, DeliveryStatus, EmailClient
from api.services.subscription_processor import ProcessingResult, SubscriptionProcessor

# ---------------------------------------------------------------------------
# Dev auth tokens
# ---------------------------------------------------------------------------


def _make_dev_token(
    tenant_id: str = "laundry-1",
    sub: str = "p-admin",
    role: str = "admin",
    identity_kind: str = "user",
) -> str:
    """Generate a valid development-mode HMAC token with a role claim.

    Mirrors the signing logic in :class:`api.security.TokenManager`.
    """
    now = time.time()
    payload: dict[str, Any] = {
        "sub": sub,
        "tenant_id": tenant_id,
        "iss": "laundryflow",
        "iat": now,
        "exp": now + 3600,
        "scopes": ["read", "write"],
        "jti": "test-jti-conftest",
        "identity_kind": identity_kind,
        "role": role,
    }
    payload_json = json.dumps(payload)
    signature = hmac.new(
        _TEST_JWT_SECRET.encode("utf-8"),
        payload_json.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    token_bytes = base64.urlsafe_b64encode(payload_json.encode("utf-8")).decode("ascii")
    return f"bmdev.{token_bytes}.{signature}"


def auth_headers(role: str = "owner", tenant_id: str = "laundry-1", sub: str = "p-owner") -> dict[str, str]:
    return {"Authorization": f"Bearer {_make_dev_token(tenant_id=tenant_id, sub=sub, role=role)}"}


@pytest.fixture()
def headers_for() -> Callable[..., dict[str, str]]:
    """Return a factory for ``Authorization`` headers with a given role."""
    return auth_headers


# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        debug=True,
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:5173"],
        app_url="https://app.test",
        brand_name="LaundryFlow Pro",
    )


# ---------------------------------------------------------------------------
# Mock collaborators
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_session() -> AsyncMock:
    """Return a mock AsyncSession.

    ``execute`` returns a result whose ``scalar_one_or_none()`` is ``None``
    and ``scalars().all()`` is ``[]`` by default.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()

    result_mock = MagicMock()
    result_mock.scalar_one_or_none.return_value = None
    result_mock.scalars.return_value.all.return_value = []
    result_mock.first.return_value = None
    result_mock.all.return_value = []

    session.execute = AsyncMock(return_value=result_mock)
    session.get = AsyncMock(return_value=None)
    return session


@pytest.fixture()
def mock_email_client() -> MagicMock:
    """Return a configured email client whose sends always succeed."""
    client = MagicMock(spec=EmailClient)
    client.is_configured = True

    async def _send(to: str | list[str], subject: str, html: str) -> DeliveryResult:
        recipient = to if isinstance(to, str) else ", ".join(to)
        return DeliveryResult(recipient=recipient, status=DeliveryStatus.SENT, status_code=200, message_id="msg-1")

    client.send = AsyncMock(side_effect=_send)
    client.close = AsyncMock()
    return client


@pytest.fixture()
def mock_processor() -> AsyncMock:
    """Return a processor mock whose run reports one expired trial."""
    processor = AsyncMock(spec=SubscriptionProcessor)
    processor.run = AsyncMock(return_value=ProcessingResult(trials_expired=1, notifications_sent=2))
    return processor


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    mock_session: AsyncMock,
    mock_email_client: MagicMock,
    mock_processor: AsyncMock,
):
    """Create a FastAPI app with dependency overrides for testing."""
    application = create_app()

    async def _override_session():
        yield mock_session

    application.dependency_overrides[get_tenant_session] = _override_session
    application.dependency_overrides[get_admin_session] = _override_session
    application.dependency_overrides[get_reader_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_email_client] = lambda: mock_email_client
    application.dependency_overrides[get_processor] = lambda: mock_processor
    application.dependency_overrides[get_policy] = lambda: DEFAULT_POLICY
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncClient:
    """Yield an async httpx client bound to the test app.

    Requests carry an ``owner`` token by default; pass ``headers=`` per
    request to act as another role.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers=auth_headers("owner"),
    ) as ac:
        yield ac


# ---------------------------------------------------------------------------
# SQLite-backed state store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    """Session factory over a temporary SQLite database seeded with:

    * ``laundry-1`` "Lavandería Sol" (contact ``dueno@sol.do``) with
      branches ``branch-1`` "Centro" and ``branch-2`` "Norte".
    * ``laundry-2`` "Lavandería Luna" without a contact email and branch
      ``branch-3`` "Sur".
    * Plans ``plan-basic`` (grace 5, trial 14) and ``plan-pro``.
    * Active profiles on ``branch-3``: ``p-admin3`` (admin) and
      ``p-staff3`` (staff).
    """
    engine = get_local_engine(tmp_path / "billing.db")
    await create_local_tables(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)

    async with factory() as session, session.begin():
        session.add_all(
            [
                LaundryTable(id="laundry-1", name="Lavandería Sol", email="dueno@sol.do"),
                LaundryTable(id="laundry-2", name="Lavandería Luna", email=None),
                SubscriptionPlanTable(
                    id="plan-basic",
                    name="Básico",
                    price_monthly=Decimal("1500.00"),
                    price_annual=Decimal("15000.00"),
                    currency="DOP",
                    trial_days=14,
                    grace_period_days=5,
                ),
                SubscriptionPlanTable(
                    id="plan-pro",
                    name="Pro",
                    price_monthly=Decimal("2500.00"),
                    price_annual=Decimal("25000.00"),
                    currency="USD",
                    trial_days=30,
                    grace_period_days=3,
                ),
            ]
        )
        await session.flush()
        session.add_all(
            [
                BranchTable(id="branch-1", laundry_id="laundry-1", name="Centro"),
                BranchTable(id="branch-2", laundry_id="laundry-1", name="Norte"),
                BranchTable(id="branch-3", laundry_id="laundry-2", name="Sur"),
            ]
        )
        await session.flush()
        session.add_all(
            [
                ProfileTable(
                    id="p-admin3",
                    laundry_id="laundry-2",
                    branch_id="branch-3",
                    name="Marta",
                    email="marta@luna.do",
                    role="admin",
                ),
                ProfileTable(
                    id="p-staff3",
                    laundry_id="laundry-2",
                    branch_id="branch-3",
                    name="Pedro",
                    email="pedro@luna.do",
                    role="staff",
                ),
            ]
        )

    yield factory

    await engine.dispose()


@pytest.fixture()
def add_subscription(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[str]]:
    """Return ``await add_subscription(id, branch_id, status, **fields)``."""

    async def _add(
        sub_id: str,
        branch_id: str,
        status: SubscriptionStatus,
        *,
        laundry_id: str | None = None,
        plan_id: str | None = "plan-basic",
        **fields: Any,
    ) -> str:
        if laundry_id is None:
            laundry_id = "laundry-2" if branch_id == "branch-3" else "laundry-1"
        async with session_factory() as session, session.begin():
            session.add(
                BranchSubscriptionTable(
                    id=sub_id,
                    branch_id=branch_id,
                    laundry_id=laundry_id,
                    plan_id=plan_id,
                    status=status.value,
                    **fields,
                )
            )
        return sub_id

    return _add
