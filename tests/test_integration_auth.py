"""Integration tests for the HTTP surface.

Tests cover:
- Registration and login through the API
- Session cookie and bearer token handling
- Logout idempotency
- Lockout and IP block responses
- MFA enrolment, challenge and backup codes end to end
- Session management endpoints
- Admin unlock and audit listing
- Health endpoint and response headers
"""

import time

import pytest
from fastapi.testclient import TestClient

import dormauth.app as app_module
from dormauth.service.mfa import generate_totp
from dormauth.service.runtime import get_runtime, reset_runtime_for_tests

from conftest import OTHER_STRONG_PASSWORD, STRONG_PASSWORD, FakeClock

COOKIE = "dormaxis_token"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="asha@example.com", name="Asha Rai", password=STRONG_PASSWORD):
    resp = client.post(
        "/v1/auth/register",
        json={"name": name, "email": email, "password": password, "confirm_password": password},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]["user"]


def _login(client, email="asha@example.com", password=STRONG_PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _current_code(secret):
    return generate_totp(secret, time.time())


class TestRegistration:
    def test_register_returns_public_user(self, client):
        resp = client.post(
            "/v1/auth/register",
            json={"name": "Asha Rai", "email": "Asha@Example.com", "password": STRONG_PASSWORD},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["message"] == "User registered successfully"
        assert body["data"]["user"]["email"] == "asha@example.com"
        assert "password" not in str(body["data"]["user"])

    def test_duplicate_registration_conflict(self, client):
        _register(client)
        resp = client.post(
            "/v1/auth/register",
            json={"name": "Asha Rai", "email": "asha@example.com", "password": STRONG_PASSWORD},
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_invalid_email_reports_field(self, client):
        resp = client.post(
            "/v1/auth/register",
            json={"name": "Asha Rai", "email": "not-an-email", "password": STRONG_PASSWORD},
        )
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["field"] == "email"

    def test_weak_password_violations(self, client):
        resp = client.post(
            "/v1/auth/register",
            json={"name": "Asha Rai", "email": "asha@example.com", "password": "short"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"]["violations"]

    def test_mismatched_confirmation(self, client):
        resp = client.post(
            "/v1/auth/register",
            json={
                "name": "Asha Rai",
                "email": "asha@example.com",
                "password": STRONG_PASSWORD,
                "confirm_password": OTHER_STRONG_PASSWORD,
            },
        )
        assert resp.status_code == 400


class TestLoginAndSession:
    def test_login_sets_http_only_cookie(self, client):
        _register(client)
        resp = _login(client)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["message"] == "Login successful"
        assert data["token"]
        assert data["user"]["email"] == "asha@example.com"
        set_cookie = resp.headers["set-cookie"]
        assert f"{COOKIE}=" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "samesite=lax" in set_cookie.lower()

        profile = client.get("/v1/auth/profile")
        assert profile.status_code == 200
        assert profile.json()["data"]["email"] == "asha@example.com"

    def test_bearer_token_accepted(self, client):
        _register(client)
        token = _login(client).json()["data"]["token"]
        fresh = TestClient(app_module.app)
        resp = fresh.get("/v1/auth/profile", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200

    def test_profile_requires_session(self, client):
        resp = client.get("/v1/auth/profile")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_logout_twice_succeeds(self, client):
        _register(client)
        _login(client)
        first = client.post("/v1/auth/logout")
        second = client.post("/v1/auth/logout")
        assert first.status_code == 200
        assert second.status_code == 200
        assert client.get("/v1/auth/profile").status_code == 401

    def test_wrong_password_generic_error(self, client):
        _register(client)
        resp = _login(client, password="wrong-password")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "Invalid credentials"
        unknown = _login(client, email="ghost@example.com")
        assert unknown.json()["error"]["message"] == "Invalid credentials"

    def test_lockout_returns_423_with_retry_after(self, client):
        _register(client)
        for _ in range(5):
            assert _login(client, password="wrong-password").status_code == 401
        resp = _login(client)
        assert resp.status_code == 423
        body = resp.json()
        assert body["error"]["code"] == "locked"
        assert body["error"]["details"]["retry_after_seconds"] > 0
        assert int(resp.headers["Retry-After"]) > 0

    def test_ip_block_returns_429(self, client):
        for _ in range(10):
            _login(client, email="ghost@example.com", password="wrong-password")
        resp = _login(client, email="ghost@example.com", password="wrong-password")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert resp.headers["Retry-After"] == str(15 * 60)

    def test_rotating_forwarded_for_does_not_evade_ip_block(self, client):
        statuses = [
            client.post(
                "/v1/auth/login",
                json={"email": "ghost@example.com", "password": "wrong-password"},
                headers={"X-Forwarded-For": f"203.0.113.{i}"},
            ).status_code
            for i in range(11)
        ]
        assert statuses[:10] == [401] * 10
        assert statuses[10] == 429

    def test_trusted_proxy_hop_identifies_client(self, client, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXY_COUNT", "1")
        reset_runtime_for_tests()

        def attempt(hops):
            return client.post(
                "/v1/auth/login",
                json={"email": "ghost@example.com", "password": "wrong-password"},
                headers={"X-Forwarded-For": hops},
            ).status_code

        for i in range(10):
            assert attempt(f"spoof-{i}, 198.51.100.7") == 401
        assert attempt("spoof-x, 198.51.100.7") == 429
        assert attempt("198.51.100.8") == 401

    def test_idle_session_clears_cookie(self, client):
        clock = FakeClock()
        reset_runtime_for_tests(clock=clock)
        _register(client)
        _login(client)
        clock.advance(minutes=16)
        resp = client.get("/v1/auth/profile")
        assert resp.status_code == 401
        assert f"{COOKIE}=" in resp.headers["set-cookie"]
        assert "Max-Age=0" in resp.headers["set-cookie"]


class TestPasswordEndpoints:
    def test_validate_password(self, client):
        resp = client.post("/v1/auth/validate-password", json={"password": STRONG_PASSWORD})
        data = resp.json()["data"]
        assert data["valid"] is True
        assert data["strength_label"] == "Very Strong"

    def test_password_requirements(self, client):
        data = client.get("/v1/auth/password-requirements").json()["data"]
        assert data["min_length"] == 12
        assert len(data["requirements"]) == 5

    def test_change_password(self, client):
        _register(client)
        _login(client)
        resp = client.post(
            "/v1/auth/change-password",
            json={
                "current_password": STRONG_PASSWORD,
                "new_password": OTHER_STRONG_PASSWORD,
                "confirm_password": OTHER_STRONG_PASSWORD,
            },
        )
        assert resp.status_code == 200
        assert client.get("/v1/auth/profile").status_code == 200
        assert _login(client, password=OTHER_STRONG_PASSWORD).status_code == 200

    def test_forgot_password_is_uniform_and_rate_limited(self, client):
        _register(client)
        known = client.post("/v1/auth/forgot-password", json={"email": "asha@example.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"]["message"] == unknown.json()["data"]["message"]

        for _ in range(2):
            client.post("/v1/auth/forgot-password", json={"email": "asha@example.com"})
        limited = client.post("/v1/auth/forgot-password", json={"email": "asha@example.com"})
        assert limited.status_code == 429
        assert "Retry-After" in limited.headers

    def test_reset_with_bad_code(self, client):
        _register(client)
        client.post("/v1/auth/forgot-password", json={"email": "asha@example.com"})
        resp = client.post(
            "/v1/auth/verify-reset-code", json={"email": "asha@example.com", "code": "000000"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"


class TestSessionEndpoints:
    def test_list_and_revoke_sessions(self, client):
        _register(client)
        other = TestClient(app_module.app)
        _login(other)
        _login(client)

        listed = client.get("/v1/auth/sessions").json()["data"]
        assert listed["count"] == 2
        foreign = next(s for s in listed["sessions"] if not s["is_current"])

        resp = client.delete(f"/v1/auth/sessions/{foreign['id']}")
        assert resp.status_code == 200
        assert other.get("/v1/auth/profile").status_code == 401
        assert client.delete(f"/v1/auth/sessions/{foreign['id']}").status_code == 404

    def test_revoke_current_session_clears_cookie(self, client):
        _register(client)
        _login(client)
        current = client.get("/v1/auth/sessions").json()["data"]["sessions"][0]
        resp = client.delete(f"/v1/auth/sessions/{current['id']}")
        assert "Max-Age=0" in resp.headers["set-cookie"]

    def test_revoke_all_keeps_current(self, client):
        _register(client)
        _login(TestClient(app_module.app))
        _login(TestClient(app_module.app))
        _login(client)
        resp = client.delete("/v1/auth/sessions")
        assert resp.json()["data"]["revoked_count"] == 2
        assert client.get("/v1/auth/profile").status_code == 200

    def test_delete_account(self, client):
        _register(client)
        _login(client)
        assert client.request("DELETE", "/v1/auth/account", json={"password": ""}).status_code == 400
        resp = client.request("DELETE", "/v1/auth/account", json={"password": STRONG_PASSWORD})
        assert resp.status_code == 200
        assert _login(client).status_code == 401


class TestMFAFlow:
    def _enable(self, client):
        _register(client)
        _login(client)
        setup = client.post("/v1/mfa/setup")
        assert setup.status_code == 200
        secret = setup.json()["data"]["secret"]
        assert setup.json()["data"]["qr_code"].startswith("data:image/svg+xml;base64,")
        verify = client.post("/v1/mfa/verify-setup", json={"code": _current_code(secret)})
        assert verify.status_code == 200, verify.text
        codes = verify.json()["data"]["backup_codes"]
        client.post("/v1/auth/logout")
        return secret, codes

    def test_login_requires_second_factor(self, client):
        secret, codes = self._enable(client)
        assert len(codes) == 10

        first = _login(client)
        data = first.json()["data"]
        assert data["mfa_required"] is True
        assert data["token"] is None
        assert "set-cookie" not in first.headers
        assert client.get("/v1/auth/profile").status_code == 401

        verified = client.post(
            "/v1/mfa/verify",
            json={"temp_token": data["temp_token"], "code": _current_code(secret)},
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["message"] == "MFA verification successful"
        assert verified.json()["data"]["user"]["mfa_enabled"] is True
        assert client.get("/v1/mfa/status").json()["data"]["mfa_enabled"] is True

        replay = client.post(
            "/v1/mfa/verify",
            json={"temp_token": data["temp_token"], "code": _current_code(secret)},
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "Invalid or expired temporary token"

    def test_backup_code_login(self, client):
        _secret, codes = self._enable(client)
        temp_token = _login(client).json()["data"]["temp_token"]
        resp = client.post(
            "/v1/mfa/use-backup", json={"temp_token": temp_token, "backup_code": codes[0]}
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["backup_codes_remaining"] == 9

        temp_token = _login(client).json()["data"]["temp_token"]
        reused = client.post(
            "/v1/mfa/use-backup", json={"temp_token": temp_token, "backup_code": codes[0]}
        )
        assert reused.status_code == 401

    def test_malformed_code_rejected(self, client):
        self._enable(client)
        temp_token = _login(client).json()["data"]["temp_token"]
        resp = client.post("/v1/mfa/verify", json={"temp_token": temp_token, "code": "12ab56"})
        assert resp.status_code == 400

    def test_disable_mfa(self, client):
        secret, _codes = self._enable(client)
        temp_token = _login(client).json()["data"]["temp_token"]
        client.post("/v1/mfa/verify", json={"temp_token": temp_token, "code": _current_code(secret)})

        wrong = client.post("/v1/mfa/disable", json={"password": "wrong-password"})
        assert wrong.status_code == 401
        resp = client.post("/v1/mfa/disable", json={"password": STRONG_PASSWORD})
        assert resp.status_code == 200
        assert client.get("/v1/mfa/status").json()["data"]["mfa_enabled"] is False

    def test_regenerate_backup_codes(self, client):
        secret, codes = self._enable(client)
        temp_token = _login(client).json()["data"]["temp_token"]
        client.post("/v1/mfa/verify", json={"temp_token": temp_token, "code": _current_code(secret)})
        resp = client.post("/v1/mfa/backup-codes", json={"password": STRONG_PASSWORD})
        assert resp.status_code == 200
        assert set(resp.json()["data"]["backup_codes"]).isdisjoint(codes)


class TestAdmin:
    def _admin_client(self):
        runtime = get_runtime()
        runtime.credentials.register(
            email="warden@example.com", name="Hall Warden", password=STRONG_PASSWORD, role="admin"
        )
        admin = TestClient(app_module.app)
        assert _login(admin, email="warden@example.com").status_code == 200
        return admin

    def test_unlock_locked_account(self, client):
        user = _register(client)
        for _ in range(6):
            _login(client, password="wrong-password")
        assert _login(client).status_code == 423

        admin = self._admin_client()
        resp = admin.post(f"/v1/admin/users/{user['id']}/unlock")
        assert resp.status_code == 200
        assert _login(client).status_code == 200

        audit = admin.get("/v1/admin/audit", params={"action": "UNLOCK"}).json()["data"]
        assert audit["total"] == 1
        assert audit["items"][0]["target_id"] == user["id"]
        locks = admin.get("/v1/admin/audit", params={"action": "LOCK"}).json()["data"]
        assert locks["total"] == 1
        assert locks["items"][0]["ip_address"] == "testclient"

    def test_student_cannot_use_admin_routes(self, client):
        user = _register(client)
        _login(client)
        assert client.get("/v1/admin/audit").status_code == 403
        resp = client.post(f"/v1/admin/users/{user['id']}/unlock")
        assert resp.json()["error"]["code"] == "forbidden"

    def test_audit_never_contains_secrets(self, client):
        _register(client)
        _login(client)
        client.post(
            "/v1/auth/change-password",
            json={"current_password": STRONG_PASSWORD, "new_password": OTHER_STRONG_PASSWORD},
        )
        admin = self._admin_client()
        body = admin.get("/v1/admin/audit", params={"limit": 100}).text
        assert STRONG_PASSWORD not in body
        assert OTHER_STRONG_PASSWORD not in body
        assert "argon2" not in body


class TestPlumbing:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert body["checks"]["filesystem"]["status"] == "healthy"

    def test_request_id_echoed(self, client):
        resp = client.get("/v1/auth/password-requirements", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_security_headers(self, client):
        resp = client.get("/v1/auth/password-requirements")
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in resp.headers["Cache-Control"]
