"""Integration tests for the HTTP auth flow.

Covers:
- Registration and email confirmation
- Login code request and confirmation
- Token refresh and rotation
- Logout, logout everywhere
- Admin-only routes
"""

import pytest
from fastapi.testclient import TestClient

from passless import app as app_module
from passless.service.runtime import get_runtime
from passless.storage.models import ADMIN_ROLE


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


REGISTRATION = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "nickname": "ada",
    "email": "ada@example.com",
    "accepted_privacy_policy": True,
}


def _register(client, **overrides):
    body = {**REGISTRATION, **overrides}
    response = client.post("/v1/auth/register", json=body)
    assert response.status_code == 201, response.text
    data = response.json()["data"]
    confirm = client.post(
        "/v1/auth/verify-email",
        json={"session_id": data["session_id"], "code": data["code"]},
    )
    assert confirm.status_code == 201, confirm.text
    return confirm.json()["data"]


def _login(client, email="ada@example.com"):
    sent = client.post("/v1/auth/login", json={"email": email}).json()["data"]
    response = client.post("/v1/auth/verify-login", json={"email": email, "code": sent["code"]})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestRegistration:
    """Tests for registration and email confirmation."""

    def test_register_returns_session(self, client):
        response = client.post("/v1/auth/register", json=REGISTRATION)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["session_id"]
        assert body["data"]["code_expires"]
        assert len(body["data"]["code"]) == 6
        assert response.headers["Cache-Control"] == "no-store"

    def test_register_reports_every_invalid_field(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"first_name": "", "nickname": "x", "email": "bad"},
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        fields = {f["field"] for f in error["details"]["fields"]}
        assert fields == {
            "first_name",
            "last_name",
            "nickname",
            "email",
            "accepted_privacy_policy",
        }

    def test_unknown_request_field_rejected(self, client):
        response = client.post("/v1/auth/register", json={**REGISTRATION, "password": "x"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_verify_email_creates_user(self, client):
        user = _register(client)

        assert user["email"] == "ada@example.com"
        assert user["email_verified"] is True
        assert user["roles"] == ["user"]

    def test_duplicate_registration_rejected(self, client):
        _register(client)
        response = client.post("/v1/auth/register", json=REGISTRATION)

        assert response.status_code == 400
        codes = {f["code"] for f in response.json()["error"]["details"]["fields"]}
        assert codes == {"nickname_taken", "email_taken"}

    def test_wrong_code(self, client):
        data = client.post("/v1/auth/register", json=REGISTRATION).json()["data"]
        wrong = "000000" if data["code"] != "000000" else "111111"
        response = client.post(
            "/v1/auth/verify-email", json={"session_id": data["session_id"], "code": wrong}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_code"

    def test_resend_code_for_unknown_session_is_masked(self, client):
        response = client.post("/v1/auth/resend-code", json={"session_id": "missing"})
        assert response.status_code == 200
        assert response.json()["data"]["session_id"] == "missing"


class TestLoginFlow:
    """Tests for sign-in with an emailed code."""

    def test_login_response_same_for_unknown_email(self, client):
        _register(client)
        known = client.post("/v1/auth/login", json={"email": "ada@example.com"}).json()
        unknown = client.post("/v1/auth/login", json={"email": "ghost@example.com"}).json()

        assert set(known["data"]) == set(unknown["data"])
        assert known["data"]["message"] == unknown["data"]["message"]

    def test_verify_login_returns_tokens(self, client):
        _register(client)
        tokens = _login(client)

        assert tokens["token_type"] == "bearer"
        assert tokens["access_token"] and tokens["refresh_token"]

        me = client.get("/v1/auth/me", headers=_auth(tokens))
        assert me.status_code == 200
        assert me.json()["data"]["nickname"] == "ada"

    def test_me_requires_token(self, client):
        response = client.get("/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_me_rejects_refresh_token(self, client):
        _register(client)
        tokens = _login(client)
        response = client.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {tokens['refresh_token']}"}
        )
        assert response.status_code == 401


class TestTokenRefresh:
    """Tests for refresh rotation and logout."""

    def test_refresh_rotates_and_revokes(self, client):
        _register(client)
        t1 = _login(client)

        t2 = client.post("/v1/auth/refresh-token", json={"refresh_token": t1["refresh_token"]})
        assert t2.status_code == 200
        t2 = t2.json()["data"]
        assert t2["refresh_token"] != t1["refresh_token"]

        replay = client.post("/v1/auth/refresh-token", json={"refresh_token": t1["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_invalid"

        t3 = client.post("/v1/auth/refresh-token", json={"refresh_token": t2["refresh_token"]})
        assert t3.status_code == 200

    def test_logout(self, client):
        _register(client)
        tokens = _login(client)

        response = client.post("/v1/auth/logout", json={"refresh_token": tokens["refresh_token"]})
        assert response.json()["data"]["revoked"] == 1

        again = client.post("/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]})
        assert again.status_code == 401

    def test_logout_all(self, client):
        _register(client)
        first = _login(client)
        second = _login(client)

        response = client.post("/v1/auth/logout-all", headers=_auth(second))
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 2

        for tokens in (first, second):
            refreshed = client.post(
                "/v1/auth/refresh-token", json={"refresh_token": tokens["refresh_token"]}
            )
            assert refreshed.status_code == 401


class TestAdminRoutes:
    """Tests for role-gated endpoints."""

    def test_non_admin_forbidden(self, client):
        user = _register(client)
        tokens = _login(client)

        response = client.get(f"/v1/admin/users/{user['id']}", headers=_auth(tokens))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_can_read_users(self, client):
        admin = _register(client)
        other = _register(client, nickname="bob", email="bob@example.com")
        get_runtime().store.assign_role_to_user(admin["id"], ADMIN_ROLE)
        tokens = _login(client)

        response = client.get(f"/v1/admin/users/{other['id']}", headers=_auth(tokens))
        assert response.status_code == 200
        assert response.json()["data"]["email"] == "bob@example.com"

        missing = client.get("/v1/admin/users/does-not-exist", headers=_auth(tokens))
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

    def test_revoked_admin_loses_access_immediately(self, client):
        admin = _register(client)
        store = get_runtime().store
        store.assign_role_to_user(admin["id"], ADMIN_ROLE)
        tokens = _login(client)
        store.user_roles = [ur for ur in store.user_roles if ur.role_id != store.roles[ADMIN_ROLE].id]

        response = client.get(f"/v1/admin/users/{admin['id']}", headers=_auth(tokens))
        assert response.status_code == 403


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["checks"]["store"]["status"] == "ok"
