"""
HTTP-level tests: routing, guard wiring and the structured error body.

Run through Starlette's TestClient inside a `with` block so the lifespan
(seeding, admin-role check) runs like it does under uvicorn.
"""

import functools

import pytest
from fastapi.testclient import TestClient

from authkit.api.app import create_app
from authkit.core.errors import AdminRoleMissingError


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def app(settings, storage, mail):
    return create_app(settings, storage, mail)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def bearer(tokens: dict) -> dict:
    return {"Authorization": f"Bearer {tokens['access_token']}"}


def login(client, email, password="pw123!") -> dict:
    response = client.post("/auth/login", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def link_token(message) -> str:
    return message.text.split("token=")[1].split()[0]


def create_user(client, app, email, role_names=()):
    """Create a verified user directly through the service layer."""
    kit = app.state.kit
    role_ids = []
    for name in role_names:
        role_ids.append(client.portal.call(kit.storage.roles.find_by_name, name).id)
    return client.portal.call(functools.partial(kit.users.create, email, "pw123!", role_ids=role_ids))


@pytest.fixture
def admin_headers(client, app):
    create_user(client, app, "root@example.com", role_names=["admin"])
    return bearer(login(client, "root@example.com"))


@pytest.fixture
def user_headers(client, app):
    create_user(client, app, "pleb@example.com")
    return bearer(login(client, "pleb@example.com"))


# =============================================================================
# Account flows
# =============================================================================


class TestAccountFlow:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_register_verify_login_me(self, client, mail):
        response = client.post(
            "/auth/register",
            json={"email": "alice@example.com", "password": "pw123!", "username": "alice"},
        )
        assert response.status_code == 201
        assert response.json()["email_sent"] is True
        assert response.json()["user"]["is_verified"] is False

        response = client.post("/auth/login", json={"email": "alice@example.com", "password": "pw123!"})
        assert response.status_code == 403
        assert response.json()["code"] == "AUTH_002"

        response = client.post("/auth/verify-email", json={"token": link_token(mail.outbox[-1])})
        assert response.status_code == 200
        assert response.json()["is_verified"] is True

        tokens = login(client, "alice@example.com")
        assert tokens["token_type"] == "bearer"

        me = client.get("/auth/me", headers=bearer(tokens)).json()
        assert me["username"] == "alice"
        assert me["roles"] == []
        assert "password_hash" not in me

    def test_duplicate_email_body(self, client):
        payload = {"email": "alice@example.com", "password": "pw123!"}
        client.post("/auth/register", json=payload)

        response = client.post("/auth/register", json=payload)
        body = response.json()

        assert response.status_code == 409
        assert body["code"] == "REG_001"
        assert body["status_code"] == 409
        assert body["path"] == "/auth/register"
        assert body["message"]
        assert body["timestamp"]

    def test_wrong_password(self, client, app):
        create_user(client, app, "alice@example.com")
        response = client.post("/auth/login", json={"email": "alice@example.com", "password": "wrongpw"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_001"

    def test_short_password(self, client):
        response = client.post("/auth/register", json={"email": "alice@example.com", "password": "pw"})
        assert response.status_code == 400
        assert response.json()["code"] == "PWD_001"

    def test_password_reset(self, client, app, mail):
        create_user(client, app, "alice@example.com")
        old = login(client, "alice@example.com")

        response = client.post("/auth/forgot-password", json={"email": "alice@example.com"})
        assert response.status_code == 200
        token = link_token(mail.outbox[-1])

        response = client.post("/auth/reset-password", json={"token": token, "new_password": "n3w-secret"})
        assert response.status_code == 200

        response = client.post("/auth/refresh", json={"refresh_token": old["refresh_token"]})
        assert response.status_code == 401
        login(client, "alice@example.com", "n3w-secret")

    def test_forgot_password_does_not_leak_accounts(self, client, app):
        create_user(client, app, "alice@example.com")
        known = client.post("/auth/forgot-password", json={"email": "alice@example.com"})
        unknown = client.post("/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.json() == unknown.json()


# =============================================================================
# Sessions
# =============================================================================


class TestSessions:
    def test_refresh_reuse_kills_the_chain(self, client, app):
        create_user(client, app, "alice@example.com")
        first = login(client, "alice@example.com")

        second = client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert second.status_code == 200

        replay = client.post("/auth/refresh", json={"refresh_token": first["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["code"] == "AUTH_009"

        # The legitimate holder is logged out too
        follow_up = client.post("/auth/refresh", json={"refresh_token": second.json()["refresh_token"]})
        assert follow_up.status_code == 401

    def test_refresh_without_token(self, client):
        response = client.post("/auth/refresh", json={})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTH_006"

    def test_logout(self, client, app):
        create_user(client, app, "alice@example.com")
        tokens = login(client, "alice@example.com")

        assert client.post("/auth/logout", json={"refresh_token": tokens["refresh_token"]}).status_code == 200
        assert client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).status_code == 401

    def test_me_requires_a_bearer(self, client):
        missing = client.get("/auth/me")
        garbage = client.get("/auth/me", headers={"Authorization": "Bearer garbage"})

        assert missing.status_code == garbage.status_code == 401
        assert missing.json()["code"] == "AUTH_007"
        assert garbage.json()["code"] == "AUTH_004"


# =============================================================================
# Admin
# =============================================================================


class TestAdmin:
    def test_unauthenticated_vs_forbidden(self, client, user_headers, admin_headers):
        anonymous = client.get("/admin/roles")
        pleb = client.get("/admin/roles", headers=user_headers)
        root = client.get("/admin/roles", headers=admin_headers)

        assert anonymous.status_code == 401
        assert anonymous.json()["code"] == "AUTH_007"
        assert pleb.status_code == 403
        assert pleb.json()["code"] == "AUTH_008"
        assert root.status_code == 200
        assert {r["name"] for r in root.json()} >= {"admin", "user"}

    def test_permission_created_twice(self, client, admin_headers):
        first = client.post("/admin/permissions", json={"name": "users:read"}, headers=admin_headers)
        second = client.post("/admin/permissions", json={"name": "users:read"}, headers=admin_headers)

        assert first.status_code == 201
        assert second.status_code == 409
        assert second.json()["code"] == "PERM_002"
        assert second.json()["path"] == "/admin/permissions"

    def test_role_assignment_reaches_user_on_refresh(self, client, app, admin_headers):
        alice = create_user(client, app, "alice@example.com")
        tokens = login(client, "alice@example.com")

        perm = client.post("/admin/permissions", json={"name": "posts:write"}, headers=admin_headers).json()
        role = client.post(
            "/admin/roles",
            json={"name": "editor", "permission_ids": [perm["id"]]},
            headers=admin_headers,
        ).json()
        response = client.put(f"/admin/users/{alice.id}/roles", json={"role_ids": [role["id"]]}, headers=admin_headers)
        assert response.status_code == 200

        kit = app.state.kit
        assert kit.tokens.verify_access(tokens["access_token"]).roles == []

        refreshed = client.post("/auth/refresh", json={"refresh_token": tokens["refresh_token"]}).json()
        assert kit.tokens.verify_access(refreshed["access_token"]).roles == [role["id"]]
        assert client.get("/auth/me", headers=bearer(refreshed)).json()["permissions"] == ["posts:write"]

    def test_unknown_ids(self, client, admin_headers):
        response = client.put(
            "/admin/roles/role_missing/permissions",
            json={"permission_ids": []},
            headers=admin_headers,
        )
        assert response.status_code == 404
        assert response.json()["code"] == "ROLE_001"

        response = client.get("/admin/users/user_missing", headers=admin_headers)
        assert response.json()["code"] == "USER_001"

    def test_ban_blocks_login(self, client, app, admin_headers):
        alice = create_user(client, app, "alice@example.com")
        assert client.post(f"/admin/users/{alice.id}/ban", headers=admin_headers).json()["is_banned"]

        response = client.post("/auth/login", json={"email": "alice@example.com", "password": "pw123!"})
        assert response.status_code == 403
        assert response.json()["code"] == "AUTH_003"

    def test_admin_role_survives_delete_and_rename(self, client, app, admin_headers):
        admin_id = client.portal.call(app.state.kit.storage.roles.find_by_name, "admin").id

        response = client.delete(f"/admin/roles/{admin_id}", headers=admin_headers)
        assert response.status_code == 409
        assert response.json()["code"] == "ROLE_004"

        response = client.patch(f"/admin/roles/{admin_id}", json={"name": "superuser"}, headers=admin_headers)
        assert response.status_code == 200

        response = client.get("/admin/roles", headers=admin_headers)
        assert response.status_code == 200
        assert "superuser" in {r["name"] for r in response.json()}

    def test_list_users_filter(self, client, app, admin_headers):
        create_user(client, app, "alice@example.com")
        response = client.get("/admin/users", params={"email": "alice@example.com"}, headers=admin_headers)
        assert [u["email"] for u in response.json()] == ["alice@example.com"]


# =============================================================================
# OAuth routes
# =============================================================================


class TestOAuthRoutes:
    def test_no_providers_configured(self, client):
        assert client.get("/auth/providers").json() == {"providers": []}

    def test_unknown_provider(self, client):
        response = client.get("/auth/github/authorize")
        assert response.status_code == 400
        assert response.json()["code"] == "OAUTH_005"
        assert response.json()["details"] == {"available": []}

    def test_forged_state(self, client):
        response = client.post("/auth/google/callback", json={"code": "c", "state": "oauth_forged"})
        assert response.status_code == 400
        assert response.json()["code"] == "OAUTH_001"


# =============================================================================
# Startup & failures
# =============================================================================


class TestAppLifecycle:
    def test_unexpected_error_is_opaque(self, app):
        @app.get("/boom")
        async def boom():
            raise RuntimeError("database password is hunter2")

        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.get("/boom")

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "SYS_001"
        assert "hunter2" not in response.text

    def test_refuses_to_start_without_admin_role(self, settings, storage):
        settings.seed_defaults_on_startup = False
        app = create_app(settings, storage)

        with pytest.raises(AdminRoleMissingError):
            with TestClient(app):
                pass

    def test_seeding_on_startup_is_idempotent(self, app, storage):
        with TestClient(app):
            pass
        with TestClient(app) as client:
            roles = client.portal.call(storage.roles.list_with_permissions)

        assert sorted(r.name for r in roles) == ["admin", "user"]
