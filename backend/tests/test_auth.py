# tests/test_auth.py — Registration, login, tokens and profile linking
import pytest
from httpx import AsyncClient

from tests.conftest import get_auth_headers, TEST_PASSWORD


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_success(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "email": "NewUser@Test.com",
            "password": "SecurePass123!",
            "full_name": "New User",
        })
        assert res.status_code == 200
        data = res.json()
        assert "access_token" in data
        assert "refresh_token" in data
        assert data["user"]["email"] == "newuser@test.com"
        assert data["user"]["full_name"] == "New User"

    async def test_register_defaults_name_to_email_prefix(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "email": "jamie@test.com",
            "password": "SecurePass123!",
        })
        assert res.json()["user"]["full_name"] == "jamie"

    async def test_register_weak_password(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "email": "weak@test.com",
            "password": "short",
        })
        assert res.status_code == 422

    async def test_register_duplicate_email(self, client: AsyncClient):
        await client.post("/api/v1/auth/register", json={
            "email": "dupe@test.com",
            "password": "SecurePass123!",
        })
        res = await client.post("/api/v1/auth/register", json={
            "email": "DUPE@test.com",
            "password": "SecurePass123!",
        })
        assert res.status_code == 400

    async def test_register_invalid_email(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/register", json={
            "email": "not-an-email",
            "password": "SecurePass123!",
        })
        assert res.status_code == 422


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@kanban.dev",
            "password": TEST_PASSWORD,
        })
        assert res.status_code == 200
        data = res.json()
        assert "access_token" in data
        assert data["user"]["email"] == "testuser@kanban.dev"

    async def test_login_wrong_password(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@kanban.dev",
            "password": "WrongPassword123!",
        })
        assert res.status_code == 401

    async def test_login_nonexistent_user(self, client: AsyncClient):
        res = await client.post("/api/v1/auth/login", json={
            "email": "nobody@test.com",
            "password": "SomePassword123!",
        })
        assert res.status_code == 401

    async def test_lockout_after_repeated_failures(self, client: AsyncClient, test_user):
        for _ in range(5):
            await client.post("/api/v1/auth/login", json={
                "email": "testuser@kanban.dev", "password": "WrongPassword123!",
            })
        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@kanban.dev", "password": TEST_PASSWORD,
        })
        assert res.status_code == 429


@pytest.mark.asyncio
class TestTokens:
    async def test_access_protected_route(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        assert res.json()["email"] == "testuser@kanban.dev"

    async def test_access_without_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code in (401, 403)

    async def test_access_with_invalid_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={
            "Authorization": "Bearer invalid.token.here"
        })
        assert res.status_code == 401

    async def test_refresh_token(self, client: AsyncClient):
        reg_res = await client.post("/api/v1/auth/register", json={
            "email": "refresh@test.com",
            "password": "SecurePass123!",
        })
        refresh_token = reg_res.json()["refresh_token"]

        res = await client.post("/api/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert res.status_code == 200
        assert "access_token" in res.json()

    async def test_access_token_cannot_refresh(self, client: AsyncClient):
        reg_res = await client.post("/api/v1/auth/register", json={
            "email": "wrongtype@test.com",
            "password": "SecurePass123!",
        })
        res = await client.post("/api/v1/auth/refresh", json={
            "refresh_token": reg_res.json()["access_token"],
        })
        assert res.status_code == 401

    async def test_logout_revokes_token(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/api/v1/auth/logout", headers=headers)
        assert res.status_code == 200
        res = await client.get("/api/v1/auth/me", headers=headers)
        assert res.status_code == 401


@pytest.mark.asyncio
class TestProfile:
    async def test_update_profile(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.patch("/api/v1/auth/me", json={"full_name": "Renamed"}, headers=headers)
        assert res.status_code == 200
        assert res.json()["full_name"] == "Renamed"

    async def test_change_password(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/api/v1/auth/change-password", json={
            "current_password": TEST_PASSWORD,
            "new_password": "BrandNewPass9",
        }, headers=headers)
        assert res.status_code == 200

        res = await client.post("/api/v1/auth/login", json={
            "email": "testuser@kanban.dev", "password": "BrandNewPass9",
        })
        assert res.status_code == 200

    async def test_change_password_wrong_current(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/change-password", json={
            "current_password": "NotMyPassword1",
            "new_password": "BrandNewPass9",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 401

    async def test_me_links_team_membership_by_email(self, client: AsyncClient, test_user, other_user):
        owner = get_auth_headers(test_user)
        res = await client.post("/api/v1/team/members", json={
            "name": "Teammate", "email": "teammate@kanban.dev",
        }, headers=owner)
        assert res.status_code == 201
        assert res.json()["auth_user_id"] is None

        reg = await client.post("/api/v1/auth/register", json={
            "email": "teammate@kanban.dev", "password": "SecurePass123!",
        })
        token = reg.json()["access_token"]
        memberships = await client.get(
            "/api/v1/team/memberships", headers={"Authorization": f"Bearer {token}"},
        )
        assert memberships.status_code == 200
        assert len(memberships.json()) == 1
