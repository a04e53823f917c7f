"""Integration tests for the authentication endpoints.

Tests the token lifecycle end to end through the FastAPI app:
- Registration and login
- Refresh rotation and replay rejection
- Logout and password change revocation
- Account lockout
- Password reset
- Admin audit access
"""

import base64
import json
import uuid

import pytest
from fastapi.testclient import TestClient

from authgate import app as app_module
from authgate.service.runtime import get_runtime

PASSWORD = "Str0ng!Passw0rd"
NEW_PASSWORD = "N3w!Passw0rd-2"


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app_module.app)


@pytest.fixture
def test_user_email():
    """Generate unique test email."""
    return f"test_{uuid.uuid4().hex[:8]}@example.com"


def register(client, email, password=PASSWORD):
    response = client.post("/v1/auth/register", json={"email": email, "password": password})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    """Tests for account registration."""

    def test_register_returns_user_and_tokens(self, client, test_user_email):
        data = register(client, test_user_email)
        assert data["user"]["email"] == test_user_email
        assert data["user"]["role"] == "user"
        assert data["token_type"] == "Bearer"
        assert data["expires_in"] == 900
        assert data["refresh_token"]

    def test_register_sets_token_cookies(self, client, test_user_email):
        response = client.post(
            "/v1/auth/register", json={"email": test_user_email, "password": PASSWORD}
        )
        cookies = response.headers.get_list("set-cookie")
        refresh_cookie = next(c for c in cookies if c.startswith("refresh_token="))
        access_cookie = next(c for c in cookies if c.startswith("access_token="))
        assert "HttpOnly" in refresh_cookie
        assert "HttpOnly" not in access_cookie
        assert "samesite=lax" in refresh_cookie.lower()

    def test_duplicate_email_conflicts(self, client, test_user_email):
        register(client, test_user_email)
        response = client.post(
            "/v1/auth/register", json={"email": test_user_email.upper(), "password": PASSWORD}
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_weak_password_lists_violations(self, client, test_user_email):
        response = client.post(
            "/v1/auth/register", json={"email": test_user_email, "password": "short"}
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "weak_password"
        assert len(error["details"]["errors"]) >= 3

    def test_invalid_email_is_validation_error(self, client):
        response = client.post("/v1/auth/register", json={"email": "not-an-email", "password": PASSWORD})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestLoginFlow:
    """Tests for user login."""

    def test_login_with_valid_credentials(self, client, test_user_email):
        register(client, test_user_email)
        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": PASSWORD}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["access_token"]
        assert data["user"]["last_login_at"] is not None

    def test_wrong_password_and_unknown_email_match(self, client, test_user_email):
        register(client, test_user_email)
        wrong = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": "Wrong!Passw0rd"}
        )
        unknown = client.post(
            "/v1/auth/login", json={"email": "nobody@example.com", "password": PASSWORD}
        )
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_account_locks_after_repeated_failures(self, client, test_user_email):
        register(client, test_user_email)
        for _ in range(5):
            response = client.post(
                "/v1/auth/login", json={"email": test_user_email, "password": "Wrong!Passw0rd"}
            )
            assert response.status_code == 401

        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": PASSWORD}
        )
        assert response.status_code == 423
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert "locked_until" in error["details"]

    def test_suspended_account(self, client, test_user_email):
        user_id = register(client, test_user_email)["user"]["id"]
        get_runtime().store.set_user_status(user_id, "suspended")
        response = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": PASSWORD}
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "account_inactive"


class TestTokenRefresh:
    """Tests for refresh rotation."""

    def test_refresh_rotates_tokens(self, client, test_user_email):
        original = register(client, test_user_email)
        response = client.post(
            "/v1/auth/refresh", json={"refresh_token": original["refresh_token"]}
        )
        assert response.status_code == 200
        assert response.headers["cache-control"].startswith("no-store")
        rotated = response.json()["data"]
        assert rotated["refresh_token"] != original["refresh_token"]

        me = client.get("/v1/me", headers=bearer(rotated["access_token"]))
        assert me.status_code == 200

    def test_replayed_refresh_token_requires_login(self, client, test_user_email):
        original = register(client, test_user_email)
        first = client.post("/v1/auth/refresh", json={"refresh_token": original["refresh_token"]})
        assert first.status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refresh_token": original["refresh_token"]})
        assert replay.status_code == 401
        error = replay.json()["error"]
        assert error["code"] == "session_revoked"
        assert error["details"] == {"requires_login": True}
        cleared = [c for c in replay.headers.get_list("set-cookie") if c.startswith("refresh_token=")]
        assert cleared and "Max-Age=0" in cleared[0]

    def test_garbage_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={"refresh_token": "not-a-token"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_non_ascii_signature_is_rejected(self, client):
        def segment(data):
            return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")

        forged = ".".join(
            [segment({"alg": "HS256", "typ": "JWT"}), segment({"exp": 9999999999, "type": "refresh"}), "\u00e9"]
        )
        response = client.post("/v1/auth/refresh", json={"refresh_token": forged})
        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "invalid_token"
        assert error["details"] == {"requires_login": True}

    def test_missing_refresh_token(self, client):
        response = client.post("/v1/auth/refresh", json={})
        assert response.status_code == 401
        assert response.json()["error"]["details"]["requires_login"] is True


class TestCurrentUser:
    def test_me_requires_token(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_tampered_token(self, client, test_user_email):
        token = register(client, test_user_email)["access_token"]
        response = client.get("/v1/me", headers=bearer(token[:-4] + "AAAA"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_token"

    def test_me_returns_profile(self, client, test_user_email):
        token = register(client, test_user_email)["access_token"]
        response = client.get("/v1/me", headers=bearer(token))
        assert response.status_code == 200
        assert response.json()["data"]["email"] == test_user_email


class TestRevocation:
    def test_logout_revokes_refresh_token(self, client, test_user_email):
        data = register(client, test_user_email)
        response = client.post(
            "/v1/auth/logout",
            json={"refresh_token": data["refresh_token"]},
            headers=bearer(data["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 1

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refresh.status_code == 401

    def test_logout_everywhere(self, client, test_user_email):
        first = register(client, test_user_email)
        second = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": PASSWORD}
        ).json()["data"]
        response = client.post(
            "/v1/auth/logout", json={"all_devices": True}, headers=bearer(second["access_token"])
        )
        assert response.json()["data"]["revoked"] == 2
        for session in (first, second):
            refresh = client.post("/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
            assert refresh.status_code == 401

    def test_logout_with_unknown_token_still_succeeds(self, client):
        response = client.post("/v1/auth/logout", json={"refresh_token": "unknown"})
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 0

    def test_password_change_revokes_sessions(self, client, test_user_email):
        data = register(client, test_user_email)
        response = client.post(
            "/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": NEW_PASSWORD},
            headers=bearer(data["access_token"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked_sessions"] == 1

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": data["refresh_token"]})
        assert refresh.status_code == 401
        login = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": NEW_PASSWORD}
        )
        assert login.status_code == 200


class TestPasswordReset:
    def test_reset_flow(self, client, test_user_email):
        register(client, test_user_email)
        requested = client.post("/v1/auth/reset/request", json={"email": test_user_email})
        assert requested.status_code == 200
        token = requested.json()["data"]["reset_token"]

        confirm = client.post(
            "/v1/auth/reset/confirm", json={"token": token, "new_password": NEW_PASSWORD}
        )
        assert confirm.status_code == 200

        reused = client.post(
            "/v1/auth/reset/confirm", json={"token": token, "new_password": "An0ther!Passw0rd"}
        )
        assert reused.status_code == 400
        assert reused.json()["error"]["code"] == "invalid_token"

        login = client.post(
            "/v1/auth/login", json={"email": test_user_email, "password": NEW_PASSWORD}
        )
        assert login.status_code == 200

    def test_unknown_email_gets_same_answer(self, client, test_user_email):
        register(client, test_user_email)
        known = client.post("/v1/auth/reset/request", json={"email": test_user_email}).json()["data"]
        unknown = client.post("/v1/auth/reset/request", json={"email": "nobody@example.com"}).json()["data"]
        assert known["message"] == unknown["message"]
        assert "reset_token" not in unknown


class TestAdminAudit:
    def test_non_admin_forbidden(self, client, test_user_email):
        token = register(client, test_user_email)["access_token"]
        response = client.get("/v1/admin/audit", headers=bearer(token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_admin_sees_audit_trail(self, client, test_user_email):
        data = register(client, test_user_email)
        get_runtime().store.update_user_role(data["user"]["id"], "admin")
        client.post("/v1/auth/login", json={"email": test_user_email, "password": "Wrong!Passw0rd"})

        response = client.get(
            "/v1/admin/audit",
            params={"action": "LOGIN_FAILED"},
            headers=bearer(data["access_token"]),
        )
        assert response.status_code == 200
        items = response.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["actor_id"] == data["user"]["id"]
        assert items[0]["success"] is False
        assert items[0]["metadata"]["failed_attempts"] == 1


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"


def test_request_id_is_echoed(client):
    response = client.get("/healthz", headers={"X-Request-ID": "trace-123"})
    assert response.headers["x-request-id"] == "trace-123"
