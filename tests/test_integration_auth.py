"""Integration tests for the HTTP surface.

Tests the complete flow including:
- Signup and login
- Bearer authentication on /v1/me
- Token refresh, rotation and reuse
- Logout and logout-all
- Email verification gating profile changes
- Password reset with mailed codes
- Admin user management
- Error envelopes and request IDs
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from gatekeep import app as app_module
from gatekeep.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _signup(client, email="testuser@example.com", **extra):
    response = client.post(
        "/v1/auth/signup",
        json={"email": email, "password": PASSWORD, "name": "Test User", **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _mailed(kind, email):
    return get_runtime().mailer.last_code(kind, email)


def _verify(client, email):
    return client.post(
        "/v1/auth/verify_email", json={"token": _mailed("email_verification", email)}
    )


def _verified_session(client, email="testuser@example.com"):
    user = _signup(client, email=email)["user"]
    response = _verify(client, email)
    assert response.status_code == 200, response.text
    return user, response.json()["data"]["tokens"]


def _admin_tokens(client, email="admin@example.com"):
    runtime = get_runtime()
    user = asyncio.run(runtime.auth.admin_create_user(email, PASSWORD, "Admin", role="admin"))
    return user, asyncio.run(runtime.auth.login(email, PASSWORD))


class TestSignupAndLogin:
    def test_signup_creates_user(self, client):
        data = _signup(client, email="New@Example.com")

        assert data["user"]["email"] == "new@example.com"
        assert data["user"]["role"] == "user"
        assert "password_hash" not in data["user"]
        assert data["tokens"]["token_type"] == "Bearer"
        assert data["tokens"]["expires_in"] == 900

    def test_signup_rejects_duplicate_email(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/signup",
            json={"email": "testuser@example.com", "password": PASSWORD, "name": "Again"},
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_signup_validates_email_format(self, client):
        response = client.post(
            "/v1/auth/signup",
            json={"email": "invalid-email", "password": PASSWORD, "name": "X"},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "validation_error"

    def test_login_and_me(self, client):
        _signup(client)
        response = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert response.status_code == 200
        access = response.json()["data"]["access_token"]

        me = client.get("/v1/me", headers=_auth(access))

        assert me.status_code == 200
        assert me.json()["data"]["email"] == "testuser@example.com"

    def test_login_failure_is_uniform(self, client):
        _signup(client)
        wrong = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": "nope-nope"}
        )
        unknown = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]


class TestBearerAuthentication:
    def test_missing_and_garbage_tokens(self, client):
        for headers in ({}, {"Authorization": "Bearer junk"}, {"Authorization": "Basic abc"}):
            response = client.get("/v1/me", headers=headers)
            assert response.status_code == 401
            assert response.headers["WWW-Authenticate"] == "Bearer"
            assert response.json()["error"] == {
                "code": "unauthorized",
                "message": "unauthorized",
                "details": None,
            }

    def test_refresh_token_is_not_an_access_token(self, client):
        tokens = _signup(client)["tokens"]
        response = client.get("/v1/me", headers=_auth(tokens["refresh_token"]))
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "unauthorized"


class TestRefreshAndLogout:
    def test_refresh_rotation_and_reuse(self, client):
        tokens = _signup(client)["tokens"]

        rotated = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert rotated.status_code == 200
        assert rotated.json()["data"]["refresh_token"] != tokens["refresh_token"]

        reused = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert reused.status_code == 401

    def test_logout_revokes_both_tokens(self, client):
        tokens = _signup(client)["tokens"]
        access = tokens["access_token"]

        response = client.post(
            "/v1/auth/logout",
            headers=_auth(access),
            json={"refresh_token": tokens["refresh_token"]},
        )
        assert response.status_code == 200

        assert client.get("/v1/me", headers=_auth(access)).status_code == 401
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_without_body(self, client):
        access = _signup(client)["tokens"]["access_token"]
        assert client.post("/v1/auth/logout", headers=_auth(access)).status_code == 200
        assert client.get("/v1/me", headers=_auth(access)).status_code == 401

    def test_logout_all(self, client):
        tokens = _signup(client)["tokens"]
        client.post("/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD})

        response = client.post("/v1/auth/logout_all", headers=_auth(tokens["access_token"]))

        assert response.json()["data"]["revoked_refresh_tokens"] == 2
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401


class TestEmailVerification:
    def test_profile_update_requires_verified_email(self, client):
        access = _signup(client)["tokens"]["access_token"]

        blocked = client.patch("/v1/me", headers=_auth(access), json={"name": "New"})
        assert blocked.status_code == 403
        assert blocked.json()["error"]["code"] == "forbidden"

        response = _verify(client, "testuser@example.com")
        assert response.status_code == 200
        tokens = response.json()["data"]["tokens"]
        allowed = client.patch(
            "/v1/me", headers=_auth(tokens["access_token"]), json={"name": "New"}
        )
        assert allowed.status_code == 200
        assert allowed.json()["data"]["name"] == "New"

    def test_cannot_verify_without_the_mailed_token(self, client):
        access = _signup(client)["tokens"]["access_token"]

        assert client.post("/v1/me/verify_email", headers=_auth(access)).status_code == 404
        missing = client.post("/v1/auth/verify_email", headers=_auth(access), json={})
        assert missing.status_code == 400
        bogus = client.post("/v1/auth/verify_email", json={"token": "guessed-token"})
        assert bogus.status_code == 400
        assert bogus.json()["error"]["code"] == "validation_error"

        still_blocked = client.patch("/v1/me", headers=_auth(access), json={"name": "New"})
        assert still_blocked.status_code == 403
        assert client.get("/v1/me", headers=_auth(access)).json()["data"]["is_verified"] is False

    def test_token_cannot_be_replayed(self, client):
        _signup(client)
        token = _mailed("email_verification", "testuser@example.com")

        first = client.post("/v1/auth/verify_email", json={"token": token})
        again = client.post("/v1/auth/verify_email", json={"token": token})

        assert first.status_code == 200
        assert first.json()["data"]["user"]["is_verified"] is True
        assert again.status_code == 400

    def test_resend(self, client):
        access = _signup(client)["tokens"]["access_token"]
        first = _mailed("email_verification", "testuser@example.com")

        resent = client.post("/v1/me/verification_email", headers=_auth(access))

        assert resent.json()["data"] == {"sent": True}
        assert _mailed("email_verification", "testuser@example.com") != first
        assert _verify(client, "testuser@example.com").status_code == 200


class TestPasswordReset:
    def test_forgot_password_does_not_reveal_accounts(self, client):
        _signup(client)
        known = client.post("/v1/auth/forgot_password", json={"email": "testuser@example.com"})
        unknown = client.post("/v1/auth/forgot_password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]
        assert _mailed("password_reset", "ghost@example.com") is None

    def test_reset_flow(self, client):
        _, tokens = _verified_session(client)
        client.post("/v1/auth/forgot_password", json={"email": "testuser@example.com"})
        code = _mailed("password_reset", "testuser@example.com")
        wrong = "100000" if code != "100000" else "100001"

        bad = client.post(
            "/v1/auth/validate_reset_code",
            json={"email": "testuser@example.com", "code": wrong},
        )
        assert bad.status_code == 404
        malformed = client.post(
            "/v1/auth/validate_reset_code",
            json={"email": "testuser@example.com", "code": "abc"},
        )
        assert malformed.status_code == 400
        good = client.post(
            "/v1/auth/validate_reset_code",
            json={"email": "testuser@example.com", "code": code},
        )
        assert good.json()["data"] == {"valid": True}

        reset = client.post(
            "/v1/auth/reset_password",
            json={"email": "testuser@example.com", "code": code, "new_password": "BrandNewPass789!"},
        )
        assert reset.status_code == 200

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401
        login = client.post(
            "/v1/auth/login",
            json={"email": "testuser@example.com", "password": "BrandNewPass789!"},
        )
        assert login.status_code == 200
        reused = client.post(
            "/v1/auth/reset_password",
            json={"email": "testuser@example.com", "code": code, "new_password": "Another000!"},
        )
        assert reused.status_code == 404


class TestSelfService:
    def test_email_change_is_visible_immediately(self, client):
        _, tokens = _verified_session(client)
        access = tokens["access_token"]

        client.patch("/v1/me", headers=_auth(access), json={"email": "moved@example.com"})

        me = client.get("/v1/me", headers=_auth(access)).json()["data"]
        assert me["email"] == "moved@example.com"
        assert me["is_verified"] is False
        old = client.post(
            "/v1/auth/login", json={"email": "testuser@example.com", "password": PASSWORD}
        )
        assert old.status_code == 401

    def test_change_password(self, client):
        _, tokens = _verified_session(client)
        response = client.post(
            "/v1/me/password",
            headers=_auth(tokens["access_token"]),
            json={"current_password": PASSWORD, "new_password": "BrandNewPass789!"},
        )
        assert response.status_code == 200

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401
        login = client.post(
            "/v1/auth/login",
            json={"email": "testuser@example.com", "password": "BrandNewPass789!"},
        )
        assert login.status_code == 200

    def test_delete_me(self, client):
        _, tokens = _verified_session(client)
        access = tokens["access_token"]

        assert client.delete("/v1/me", headers=_auth(access)).status_code == 200
        assert client.get("/v1/me", headers=_auth(access)).status_code == 401


class TestAdmin:
    def test_non_admin_is_forbidden(self, client):
        _, tokens = _verified_session(client)
        response = client.get("/v1/admin/users", headers=_auth(tokens["access_token"]))
        assert response.status_code == 403

    def test_list_get_update_delete(self, client):
        _, admin = _admin_tokens(client)
        headers = _auth(admin.access_token)
        target = _signup(client, email="target@example.com", document_id="DOC-1")["user"]

        listing = client.get("/v1/admin/users", headers=headers, params={"limit": 10})
        assert listing.status_code == 200
        assert listing.json()["data"]["total"] == 2

        by_doc = client.get("/v1/admin/users", headers=headers, params={"document_id": "DOC-1"})
        assert by_doc.json()["data"]["items"][0]["id"] == target["id"]

        fetched = client.get(f"/v1/admin/users/{target['id']}", headers=headers)
        assert fetched.json()["data"]["email"] == "target@example.com"

        patched = client.patch(
            f"/v1/admin/users/{target['id']}", headers=headers, json={"is_active": False}
        )
        assert patched.json()["data"]["is_active"] is False
        login = client.post(
            "/v1/auth/login", json={"email": "target@example.com", "password": PASSWORD}
        )
        assert login.status_code == 401

        deleted = client.delete(f"/v1/admin/users/{target['id']}", headers=headers)
        assert deleted.status_code == 200
        missing = client.get(f"/v1/admin/users/{target['id']}", headers=headers)
        assert missing.status_code == 404

    def test_create_user(self, client):
        _, admin = _admin_tokens(client)
        headers = _auth(admin.access_token)
        body = {"email": "staff@example.com", "password": PASSWORD, "name": "Staff", "role": "admin"}

        created = client.post("/v1/admin/users", headers=headers, json=body)
        assert created.status_code == 201
        data = created.json()["data"]
        assert (data["role"], data["is_verified"], data["is_active"]) == ("admin", True, True)

        duplicate = client.post("/v1/admin/users", headers=headers, json=body)
        assert duplicate.status_code == 409
        unknown_role = client.post(
            "/v1/admin/users", headers=headers, json={**body, "email": "x@example.com", "role": "root"}
        )
        assert unknown_role.status_code == 400

    def test_create_user_requires_admin(self, client):
        _, tokens = _verified_session(client)
        response = client.post(
            "/v1/admin/users",
            headers=_auth(tokens["access_token"]),
            json={"email": "staff@example.com", "password": PASSWORD, "name": "Staff"},
        )
        assert response.status_code == 403

    def test_admin_cannot_demote_or_delete_self(self, client):
        user, admin = _admin_tokens(client)
        headers = _auth(admin.access_token)

        demote = client.patch(f"/v1/admin/users/{user.id}", headers=headers, json={"role": "user"})
        assert demote.status_code == 400
        delete = client.delete(f"/v1/admin/users/{user.id}", headers=headers)
        assert delete.status_code == 400


class TestEnvelope:
    def test_request_id_is_echoed(self, client):
        response = client.get("/v1/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"

    def test_oversized_request_id_is_replaced(self, client):
        response = client.get("/v1/healthz", headers={"X-Request-ID": "x" * 200})
        assert response.headers["X-Request-ID"] != "x" * 200

    def test_healthz(self, client):
        data = client.get("/v1/healthz").json()["data"]
        assert data == {"status": "healthy", "store": "MemoryStore", "cache": "MemoryCache"}
