"""Tests for the liveness and readiness probes."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError


@pytest_asyncio.fixture()
async def anonymous(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestHealth:
    @pytest.mark.asyncio
    async def test_public_and_healthy(self, anonymous) -> None:
        resp = await anonymous.get("/api/v1/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["db"] == "ok"
        assert body["email"] == "ok"

    @pytest.mark.asyncio
    async def test_db_down_still_200(self, anonymous, mock_session) -> None:
        mock_session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("down"))

        resp = await anonymous.get("/api/v1/health")

        assert resp.status_code == 200
        assert resp.json()["db"] == "degraded"


class TestReadiness:
    @pytest.mark.asyncio
    async def test_ready(self, anonymous) -> None:
        resp = await anonymous.get("/ready")

        assert resp.status_code == 200
        assert resp.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_email_not_configured_degrades(self, anonymous, mock_email_client) -> None:
        mock_email_client.is_configured = False

        resp = await anonymous.get("/ready")

        assert resp.status_code == 200
        assert resp.json()["status"] == "degraded"
        assert resp.json()["checks"]["email"] == "not_configured"

    @pytest.mark.asyncio
    async def test_db_down_not_ready(self, anonymous, mock_session) -> None:
        mock_session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("down"))

        resp = await anonymous.get("/ready")

        assert resp.status_code == 503
        assert resp.json()["status"] == "not_ready"
        assert resp.json()["checks"]["db"] == "unavailable"
