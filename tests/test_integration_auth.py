"""HTTP tests for the auth endpoints.

Covers login, refresh rotation, logout, logout-all, registration,
lockout and rate limiting through the real app and in-memory store.
"""

import pytest
from fastapi.testclient import TestClient

from sessionguard import app as app_module
from sessionguard.service.runtime import get_runtime, reset_runtime_for_tests

EMAIL = "grace@example.com"
PASSWORD = "correct-horse-battery"
COOKIE = "pm_rt"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def relaxed_limits(monkeypatch):
    monkeypatch.setenv("LOGIN_IP_RATE_LIMIT", "100")
    monkeypatch.setenv("LOGIN_IDENTITY_RATE_LIMIT", "100")
    reset_runtime_for_tests()


def _register(client, email=EMAIL, password=PASSWORD, **extra):
    return client.post("/auth/register", json={"email": email, "password": password, **extra})


def _login(client, email=EMAIL, password=PASSWORD):
    return client.post("/auth/login", json={"email": email, "password": password})


def _cookie_header(response) -> str:
    return "; ".join(response.headers.get_list("set-cookie")).lower()


class TestLogin:
    def test_login_returns_bearer_token_and_sets_cookie(self, client):
        _register(client, first_name="Grace", last_name="Hopper")
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 900
        assert body["user"]["email"] == EMAIL
        assert body["user"]["role"] == "user"
        assert body["user"]["name"] == "Grace Hopper"
        assert client.cookies.get(COOKIE)

        cookie = _cookie_header(response)
        assert "httponly" in cookie
        assert "samesite=lax" in cookie
        assert "path=/" in cookie
        assert f"max-age={30 * 24 * 3600}" in cookie
        assert response.headers["cache-control"] == "no-store"

    def test_access_token_authorizes_me(self, client):
        _register(client)
        token = _login(client).json()["access_token"]

        response = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["user"]["email"] == EMAIL

    def test_invalid_credentials_are_indistinguishable(self, client):
        _register(client)
        unknown = _login(client, email="nobody@example.com")
        wrong = _login(client, password="wrong-password")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert wrong.json()["error"]["code"] == "invalid_credentials"

    def test_missing_fields_return_400(self, client):
        response = client.post("/auth/login", json={"email": EMAIL})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"] == {"missing": ["password"]}

    def test_lockout_on_fifth_failure_then_rejects_correct_password(self, client, relaxed_limits):
        _register(client)
        statuses = [_login(client, password="wrong-password").status_code for _ in range(5)]
        assert statuses == [401, 401, 401, 401, 423]

        response = _login(client)
        assert response.status_code == 423
        error = response.json()["error"]
        assert error["code"] == "account_locked"
        assert "15 min" in error["message"]

    def test_ip_rate_limit_returns_429_with_retry_after(self, client):
        _register(client)
        for _ in range(3):
            _login(client, email="someone@example.com", password="x")

        response = _login(client)
        assert response.status_code == 429
        assert int(response.headers["retry-after"]) > 0
        error = response.json()["error"]
        assert error["code"] == "rate_limited"
        assert error["details"]["window"] == "ip"

    def test_login_reports_ip_window_headers(self, client):
        _register(client)
        response = _login(client)

        assert response.status_code == 200
        assert response.headers["x-ratelimit-limit"] == "3"
        assert response.headers["x-ratelimit-remaining"] == "2"
        assert int(response.headers["x-ratelimit-reset"]) > 0


class TestRefresh:
    def test_refresh_rotates_cookie(self, client):
        _register(client)
        _login(client)
        first_secret = client.cookies.get(COOKIE)

        response = client.post("/auth/refresh")
        assert response.status_code == 200
        assert response.json()["access_token"]
        second_secret = client.cookies.get(COOKIE)
        assert second_secret and second_secret != first_secret

    def test_replayed_secret_fails_and_clears_cookie(self, client):
        _register(client)
        _login(client)
        old_secret = client.cookies.get(COOKIE)
        assert client.post("/auth/refresh").status_code == 200

        client.cookies.clear()
        client.cookies.set(COOKIE, old_secret)
        response = client.post("/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_session"
        cookie = _cookie_header(response)
        assert cookie.startswith(f"{COOKIE}=")
        assert "max-age=0" in cookie
        assert "httponly" in cookie and "path=/" in cookie

    def test_store_failure_clears_cookie(self, client, monkeypatch):
        _register(client)
        _login(client)

        def unreachable(*args, **kwargs):
            raise RuntimeError("store unreachable")

        monkeypatch.setattr(get_runtime().store, "find_usable_refresh_session", unreachable)
        response = client.post("/auth/refresh")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        cookie = _cookie_header(response)
        assert f"{COOKIE}=" in cookie
        assert "max-age=0" in cookie

    def test_missing_cookie_is_invalid_session(self, client):
        response = client.post("/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_session"


class TestLogout:
    def test_logout_revokes_and_clears_cookie(self, client):
        _register(client)
        _login(client)
        secret = client.cookies.get(COOKIE)

        response = client.post("/auth/logout")
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert "max-age=0" in _cookie_header(response)

        client.cookies.clear()
        client.cookies.set(COOKIE, secret)
        replay = client.post("/auth/refresh")
        assert replay.status_code == 401

    def test_logout_without_cookie_still_succeeds(self, client):
        response = client.post("/auth/logout")
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_logout_all_revokes_every_session(self, client, relaxed_limits):
        _register(client)
        token = _login(client).json()["access_token"]
        secrets = [client.cookies.get(COOKIE)]
        for _ in range(2):
            _login(client)
            secrets.append(client.cookies.get(COOKIE))
        assert len(set(secrets)) == 3

        response = client.post(
            "/auth/logout-all", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 200
        assert response.json() == {"ok": True, "revoked": 3}

        for secret in secrets:
            client.cookies.clear()
            client.cookies.set(COOKIE, secret)
            assert client.post("/auth/refresh").status_code == 401

    def test_logout_all_requires_bearer_token(self, client):
        response = client.post("/auth/logout-all")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestRegister:
    def test_register_creates_user(self, client):
        response = _register(client)
        assert response.status_code == 201
        user = response.json()["user"]
        assert user["email"] == EMAIL
        assert user["role"] == "user"
        assert get_runtime().store.get_user_by_email(EMAIL) is not None

    def test_duplicate_registration_conflicts(self, client):
        _register(client)
        response = _register(client, email="Grace@Example.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_validates_input(self, client):
        assert _register(client, email="not-an-email").status_code == 400
        short = _register(client, password="short")
        assert short.status_code == 400
        assert "short" not in str(short.json())

    def test_register_disabled(self, client, monkeypatch):
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        reset_runtime_for_tests()
        response = _register(client)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"
