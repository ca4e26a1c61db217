# tests/test_auth.py — Registration, login and the authentication gate
from datetime import timedelta

import pytest
from httpx import AsyncClient

from auth import AuthService
from models import UserStatus
from tests.conftest import TEST_PASSWORD, create_user, get_auth_headers


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_company_creates_admin_owner(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register-company", json={
            "company_name": "Initech",
            "name": "Bill Lumbergh",
            "email": "Bill@Initech.io",
            "password": "SecurePass1234",
        })
        assert res.status_code == 201
        data = res.json()
        assert "access_token" in data
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 30 * 60
        assert data["user"]["email"] == "bill@initech.io"
        assert data["user"]["role"] == "admin"
        assert all(data["user"]["permissions"].values())
        assert data["user"]["company"]["name"] == "Initech"

        me = await client.get("/api/v1/auth/me", headers={
            "Authorization": f"Bearer {data['access_token']}",
        })
        assert me.status_code == 200
        assert me.json()["company_id"] == data["user"]["company_id"]

    async def test_register_weak_password(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register-company", json={
            "company_name": "Weak Co",
            "name": "Weak",
            "email": "weak@weakco.io",
            "password": "short",
        })
        assert res.status_code == 422

    async def test_register_password_needs_digit_and_uppercase(self, client: AsyncClient):
        for password in ("alllowercase123", "NoDigitsAtAllHere"):
            res = await client.post("/api/v1/auth/register-company", json={
                "company_name": "Policy Co",
                "name": "Policy",
                "email": "policy@policyco.io",
                "password": password,
            })
            assert res.status_code == 422

    async def test_register_duplicate_company_email(self, client: AsyncClient):
        body = {
            "company_name": "Dupe Co",
            "name": "Dupe",
            "email": "dupe@dupeco.io",
            "password": "SecurePass1234",
        }
        first = await client.post("/api/v1/auth/register-company", json=body)
        assert first.status_code == 201
        res = await client.post("/api/v1/auth/register-company", json={**body, "company_name": "Dupe Two"})
        assert res.status_code == 409
        assert res.json()["detail"]["field"] == "email"

    async def test_register_invalid_email(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register-company", json={
            "company_name": "Bad Email",
            "name": "Bad",
            "email": "not-an-email",
            "password": "SecurePass1234",
        })
        assert res.status_code == 422


@pytest.mark.asyncio
class TestLogin:
    async def test_owner_login_without_company(self, client: AsyncClient, admin_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "owner@acme.io",
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 200
        data = res.json()
        assert data["user"]["id"] == admin_user.id
        assert data["user"]["role"] == "admin"

    async def test_member_login(self, client: AsyncClient, developer_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "DEV@acme.io",
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 200
        assert res.json()["user"]["id"] == developer_user.id

    async def test_login_includes_company(self, client: AsyncClient, developer_user, test_company):
        res = await client.post("/api/v1/auth/login", json={
            "email": "dev@acme.io",
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 200
        company = res.json()["user"]["company"]
        assert company["id"] == test_company.id
        assert company["name"] == "Acme Corp"

    async def test_login_wrong_password(self, client: AsyncClient, developer_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "dev@acme.io",
            "password": "WrongPassword123!",
        })
        assert res.status_code == 401
        assert res.json()["detail"] == "Invalid credentials"

    async def test_login_unknown_user_same_error(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/login", json={
            "email": "nobody@acme.io",
            "password": "SomePassword123!",
        })
        assert res.status_code == 401
        assert res.json()["detail"] == "Invalid credentials"

    async def test_ambiguous_member_needs_company(
        self, client: AsyncClient, db_session, test_company, other_company
    ):
        await create_user(db_session, test_company, "shared@contractor.io")
        other = await create_user(db_session, other_company, "shared@contractor.io")

        res = await client.post("/api/v1/auth/login", json={
            "email": "shared@contractor.io",
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 401

        res = await client.post("/api/v1/auth/login", json={
            "email": "shared@contractor.io",
            "password": TEST_PASSWORD,
            "company_id": other_company.id,
        })
        assert res.status_code == 200
        assert res.json()["user"]["id"] == other.id
        assert res.json()["user"]["company_id"] == other_company.id

    async def test_inactive_user_cannot_login(self, client: AsyncClient, db_session, test_company):
        await create_user(db_session, test_company, "gone@acme.io", status=UserStatus.INACTIVE)
        res = await client.post("/api/v1/auth/login", json={
            "email": "gone@acme.io",
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 401


@pytest.mark.asyncio
class TestTokens:
    async def test_missing_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code == 401

    async def test_malformed_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert res.status_code == 401

    async def test_expired_token(self, client: AsyncClient, developer_user):
        token = AuthService.create_access_token(
            AuthService.claims_for(developer_user), expires_delta=timedelta(seconds=-1)
        )
        res = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401
        assert res.json()["detail"] == "Token expired"

    async def test_token_without_company_rejected(self, client: AsyncClient, developer_user):
        token = AuthService.create_access_token({"sub": developer_user.id, "role": "developer"})
        res = await client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert res.status_code == 401

    async def test_me_returns_claims_and_permissions(self, client: AsyncClient, qa_user):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(qa_user))
        assert res.status_code == 200
        data = res.json()
        assert data["id"] == qa_user.id
        assert data["role"] == "qa"
        assert data["permissions"]["assign_issues"] is True
        assert data["permissions"]["manage_users"] is False


@pytest.mark.asyncio
class TestChangePassword:
    async def test_change_password(self, client: AsyncClient, developer_user):
        headers = get_auth_headers(developer_user)
        res = await client.post("/api/v1/auth/change-password", headers=headers, json={
            "current_password": TEST_PASSWORD,
            "new_password": "BrandNewPass456",
        })
        assert res.status_code == 200

        login = await client.post("/api/v1/auth/login", json={
            "email": "dev@acme.io",
            "password": "BrandNewPass456",
        })
        assert login.status_code == 200

    async def test_change_password_wrong_current(self, client: AsyncClient, developer_user):
        res = await client.post("/api/v1/auth/change-password", headers=get_auth_headers(developer_user), json={
            "current_password": "NotMyPassword99",
            "new_password": "BrandNewPass456",
        })
        assert res.status_code == 401
