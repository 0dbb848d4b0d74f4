"""End-to-end auth flows over HTTP.

Drives the FastAPI app with cookies exactly as a browser would: register,
login, /me, refresh rotation with reuse detection, logout and password reset.
"""

import pytest
from fastapi.testclient import TestClient

from classifieds import app as app_module
from classifieds.service.runtime import get_runtime

BOB = {
    "email": "bob@example.com",
    "username": "bob",
    "firstName": "Bob",
    "lastName": "Smith",
    "password": "hunter2hunter2",
}


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def reset_outbox(monkeypatch):
    """Capture reset links instead of sending them."""
    sent = []
    runtime = get_runtime()
    monkeypatch.setattr(
        runtime.email, "send_password_reset", lambda email, token: sent.append((email, token)) or True
    )
    return sent


def _register(client, **overrides):
    return client.post("/api/auth/register", json={**BOB, **overrides})


def _login(client, email=BOB["email"], password=BOB["password"]):
    return client.post("/api/auth/login", json={"email": email, "password": password})


def _replay_refresh(client, token):
    """POST /refresh with only the given refresh token, ignoring the cookie jar."""
    client.cookies.clear()
    return client.post("/api/auth/refresh", headers={"Cookie": f"fc_refresh={token}"})


class TestRegister:
    def test_register_returns_public_user(self, client):
        resp = _register(client)
        body = resp.json()

        assert resp.status_code == 201
        assert body["status"] == "ok"
        user = body["data"]["user"]
        assert user["email"] == "bob@example.com"
        assert user["firstName"] == "Bob"
        assert user["isAdmin"] is False
        assert "password" not in str(body)
        assert "fc_access" not in resp.cookies

    def test_duplicates_any_case(self, client):
        _register(client)

        email_clash = _register(client, email="BOB@Example.com", username="other")
        assert email_clash.status_code == 409
        assert email_clash.json()["error"]["code"] == "EMAIL_TAKEN"

        name_clash = _register(client, email="other@example.com", username="BOB")
        assert name_clash.status_code == 409
        assert name_clash.json()["error"]["code"] == "USERNAME_TAKEN"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"username": "ab"},
            {"username": "has space"},
            {"password": "short"},
            {"email": "not-an-email"},
            {"firstName": ""},
        ],
    )
    def test_invalid_input_is_400(self, client, overrides):
        resp = _register(client, **overrides)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "VALIDATION_ERROR"


class TestLogin:
    def test_login_sets_scoped_cookies(self, client):
        _register(client)
        resp = _login(client)

        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["username"] == "bob"
        set_cookie = resp.headers.get_list("set-cookie")
        access = next(c for c in set_cookie if c.startswith("fc_access="))
        refresh = next(c for c in set_cookie if c.startswith("fc_refresh="))
        assert "HttpOnly" in access and "Path=/" in access
        assert "Path=/api/auth" in refresh
        assert "samesite=lax" in refresh.lower()

    def test_unknown_email_and_wrong_password_look_the_same(self, client):
        _register(client)
        unknown = _login(client, email="nobody@example.com")
        wrong = _login(client, password="not-the-password")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert unknown.json()["error"]["code"] == "INVALID_CREDENTIALS"

    def test_login_rate_limited_per_email(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "login_rate_limit_per_minute", 2)
        _register(client)

        first = _login(client)
        assert first.headers["X-RateLimit-Limit"] == "2"
        assert first.headers["X-RateLimit-Remaining"] == "1"
        _login(client, password="not-the-password")
        blocked = _login(client)

        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "RATE_LIMITED"
        assert "retryAfter" in blocked.json()["error"]["details"]

    def test_me_requires_session(self, client):
        assert client.get("/api/me").status_code == 401

        _register(client)
        _login(client)
        me = client.get("/api/me")
        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == "bob@example.com"

    def test_bearer_header_accepted(self, client):
        _register(client)
        _login(client)
        token = client.cookies.get("fc_access")
        client.cookies.clear()

        resp = client.get("/api/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200


class TestRefreshRotation:
    def test_bob_scenario(self, client):
        assert _register(client).status_code == 201
        assert _login(client).status_code == 200
        assert client.get("/api/me").status_code == 200
        r1 = client.cookies.get("fc_refresh")

        rotated = client.post("/api/auth/refresh")
        assert rotated.status_code == 200
        r2 = client.cookies.get("fc_refresh")
        assert r2 and r2 != r1
        assert client.get("/api/me").status_code == 200

        reuse = _replay_refresh(client, r1)
        assert reuse.status_code == 401
        assert reuse.json()["error"]["code"] == "REFRESH_TOKEN_REUSE_DETECTED"
        cleared = " ".join(reuse.headers.get_list("set-cookie"))
        assert "fc_access=" in cleared and "fc_refresh=" in cleared

        after = _replay_refresh(client, r2)
        assert after.status_code == 401
        assert after.json()["error"]["code"] == "SESSION_REVOKED"

    def test_refresh_without_cookie(self, client):
        resp = client.post("/api/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "NO_REFRESH_TOKEN"


class TestLogout:
    def test_logout_revokes_and_clears(self, client):
        _register(client)
        _login(client)
        refresh_token = client.cookies.get("fc_refresh")

        resp = client.post("/api/auth/logout")
        assert resp.status_code == 200
        assert resp.json()["data"] == {"ok": True}
        assert client.get("/api/me").status_code == 401

        again = _replay_refresh(client, refresh_token)
        assert again.json()["error"]["code"] == "SESSION_REVOKED"

    def test_logout_without_session_still_ok(self, client):
        resp = client.post("/api/auth/logout")
        assert resp.status_code == 200

    def test_non_ascii_tokens_are_unauthenticated(self, client):
        _register(client)
        _login(client)
        header = client.cookies.get("fc_refresh").split(".")[0]
        bad = f"{header}.e30.éé"
        client.cookies.clear()

        logout = client.post(
            "/api/auth/logout", headers={"Cookie": f"fc_refresh={bad}".encode("latin-1")}
        )
        assert logout.status_code == 200

        refresh = client.post(
            "/api/auth/refresh", headers={"Cookie": f"fc_refresh={bad}".encode("latin-1")}
        )
        assert refresh.status_code == 401
        assert refresh.json()["error"]["code"] == "INVALID_REFRESH_TOKEN"

        me = client.get("/api/me", headers={"Authorization": f"Bearer {bad}".encode("latin-1")})
        assert me.status_code == 401


class TestPasswordReset:
    def test_forgot_password_never_reveals_accounts(self, client, reset_outbox):
        _register(client)
        known = client.post("/api/auth/forgot-password", json={"email": "bob@example.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"] == {"ok": True}
        assert [email for email, _ in reset_outbox] == ["bob@example.com"]

    def test_reset_flow_revokes_sessions(self, client, reset_outbox):
        _register(client)
        _login(client)
        old_refresh = client.cookies.get("fc_refresh")
        client.post("/api/auth/forgot-password", json={"email": "bob@example.com"})
        (_, token), = reset_outbox

        payload = {"email": "bob@example.com", "token": token, "newPassword": "brand-new-pass"}
        resp = client.post("/api/auth/reset-password", json=payload)
        assert resp.status_code == 200
        assert resp.json()["data"] == {"ok": True}

        replay = client.post("/api/auth/reset-password", json=payload)
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "INVALID_OR_EXPIRED_RESET"

        assert _replay_refresh(client, old_refresh).json()["error"]["code"] == "SESSION_REVOKED"
        assert _login(client).status_code == 401
        assert _login(client, password="brand-new-pass").status_code == 200

    @pytest.mark.parametrize("trusted, expected_ip", [(True, "203.0.113.7"), (False, "testclient")])
    def test_request_ip_from_forwarded_header_when_trusted(
        self, client, monkeypatch, trusted, expected_ip
    ):
        runtime = get_runtime()
        monkeypatch.setattr(runtime.settings, "trust_proxy_headers", trusted)

        client.post(
            "/api/auth/forgot-password",
            json={"email": "ghost@example.com"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )

        (row,) = runtime.store.reset_tokens.values()
        assert row.user_id is None
        assert row.ip == expected_ip

    def test_bogus_token(self, client):
        _register(client)
        resp = client.post(
            "/api/auth/reset-password",
            json={"email": "bob@example.com", "token": "f" * 64, "newPassword": "brand-new-pass"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_OR_EXPIRED_RESET"


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.headers["X-Request-ID"]
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
