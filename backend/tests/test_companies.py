# tests/test_companies.py — The caller's company and service endpoints
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers


@pytest.mark.asyncio
class TestCurrentCompany:
    async def test_get_current(self, client: AsyncClient, developer_user, admin_user, test_company):
        res = await client.get("/api/v1/companies/current", headers=get_auth_headers(developer_user))
        assert res.status_code == 200
        data = res.json()
        assert data["id"] == test_company.id
        assert data["owner_id"] == admin_user.id
        assert data["member_count"] == 2

    async def test_admin_updates(self, client: AsyncClient, admin_user):
        res = await client.put("/api/v1/companies/current", headers=get_auth_headers(admin_user), json={
            "name": "Acme Corporation",
            "description": "Roadrunner traps",
        })
        assert res.status_code == 200
        assert res.json()["name"] == "Acme Corporation"
        assert res.json()["description"] == "Roadrunner traps"

    async def test_manager_cannot_update(self, client: AsyncClient, manager_user):
        res = await client.put("/api/v1/companies/current", headers=get_auth_headers(manager_user), json={
            "name": "Taken over",
        })
        assert res.status_code == 403

    async def test_requires_auth(self, client: AsyncClient):
        res = await client.get("/api/v1/companies/current")
        assert res.status_code == 401


@pytest.mark.asyncio
class TestService:
    async def test_root(self, client: AsyncClient):
        res = await client.get("/")
        assert res.status_code == 200
        assert res.json()["name"] == "Issue Tracker"

    async def test_health(self, client: AsyncClient):
        res = await client.get("/health")
        assert res.status_code == 200
        assert res.json()["status"] in ("healthy", "degraded")

    async def test_security_and_correlation_headers(self, client: AsyncClient):
        res = await client.get("/", headers={"X-Request-ID": "req-123"})
        assert res.headers["X-Request-ID"] == "req-123"
        assert res.headers["X-Content-Type-Options"] == "nosniff"
