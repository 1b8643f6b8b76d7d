"""Integration tests for the authentication endpoints.

Covers registration, login, lockout, refresh rotation, /me, password
change and the admin 2FA lifecycle through the HTTP surface.
"""

import pyotp
import pytest
from fastapi.testclient import TestClient

from storefront_auth import app as app_module
from storefront_auth.service.runtime import get_runtime

PASSWORD = "Str0ng#Passw0rd"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register(client, email="shopper@example.com", name="Shopper", password=PASSWORD):
    response = client.post(
        "/api/auth/register", json={"name": name, "email": email, "password": password}
    )
    assert response.status_code == 201, response.text
    return response.json()


def _auth_header(tokens):
    return {"Authorization": f"Bearer {tokens['accessToken']}"}


def _make_admin(client, email="admin@example.com"):
    body = _register(client, email=email, name="Admin")
    get_runtime().store.update_account(body["user"]["id"], role="admin")
    return body


def _enroll_two_factor(client, tokens):
    setup = client.post("/api/auth/2fa/setup", headers=_auth_header(tokens))
    assert setup.status_code == 200, setup.text
    secret = setup.json()["secret"]
    verify = client.post(
        "/api/auth/2fa/verify",
        json={"token": pyotp.TOTP(secret).now()},
        headers=_auth_header(tokens),
    )
    assert verify.status_code == 200, verify.text
    return secret, verify.json()["backupCodes"]


class TestRegistration:
    def test_register_returns_summary_and_tokens(self, client):
        body = _register(client, email="New.Shopper@Example.com")
        assert body["message"] == "Registration successful"
        user = body["user"]
        assert user["email"] == "new.shopper@example.com"
        assert user["role"] == "user"
        assert user["twoFactorEnabled"] is False
        assert user["isActive"] is True
        assert "passwordHash" not in user
        tokens = body["tokens"]
        assert tokens["tokenType"] == "bearer"
        assert tokens["expiresIn"] == 15 * 60

    def test_duplicate_email_rejected(self, client):
        _register(client)
        response = client.post(
            "/api/auth/register",
            json={"name": "Again", "email": "SHOPPER@example.com", "password": PASSWORD},
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Email already registered"
        assert body["details"][0]["field"] == "email"

    @pytest.mark.parametrize(
        "payload, field",
        [
            ({"name": "A", "email": "not-an-email", "password": PASSWORD}, "email"),
            ({"name": "A", "email": "a@example.com", "password": "short"}, "password"),
            ({"name": "A", "email": "a@example.com", "password": "alllowercase1!"}, "password"),
            ({"name": "", "email": "a@example.com", "password": PASSWORD}, "name"),
            ({"email": "a@example.com", "password": PASSWORD}, "name"),
        ],
    )
    def test_invalid_input_lists_field_errors(self, client, payload, field):
        response = client.post("/api/auth/register", json=payload)
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Validation failed"
        assert field in [d["field"] for d in body["details"]]

    def test_signup_can_be_disabled(self, client, monkeypatch):
        monkeypatch.setenv("ALLOW_SIGNUP", "false")
        from storefront_auth.service.runtime import reset_runtime_for_tests

        reset_runtime_for_tests()
        response = client.post(
            "/api/auth/register",
            json={"name": "A", "email": "a@example.com", "password": PASSWORD},
        )
        assert response.status_code == 403


class TestLogin:
    def test_register_then_login_gives_different_tokens(self, client):
        registered = _register(client, email="a@x.com", name="A", password="Passw0rd!")
        response = client.post(
            "/api/auth/login", json={"email": "a@x.com", "password": "Passw0rd!"}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Login successful"
        assert body["user"]["id"] == registered["user"]["id"]
        assert body["user"]["lastLoginAt"] is not None
        assert body["tokens"]["accessToken"] != registered["tokens"]["accessToken"]
        assert body["tokens"]["refreshToken"] != registered["tokens"]["refreshToken"]

    def test_unknown_email_and_wrong_password_look_the_same(self, client):
        _register(client)
        unknown = client.post(
            "/api/auth/login", json={"email": "nobody@example.com", "password": PASSWORD}
        )
        wrong = client.post(
            "/api/auth/login",
            json={"email": "shopper@example.com", "password": "Wrong#Passw0rd"},
        )
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"] == "Invalid credentials"

    def test_five_failures_lock_the_account(self, client):
        _register(client)
        for _ in range(5):
            response = client.post(
                "/api/auth/login",
                json={"email": "shopper@example.com", "password": "Wrong#Passw0rd"},
            )
            assert response.status_code == 401

        locked = client.post(
            "/api/auth/login", json={"email": "shopper@example.com", "password": PASSWORD}
        )
        assert locked.status_code == 423
        body = locked.json()
        assert body["code"] == "account_locked"
        assert 0 < body["retryAfter"] <= 2 * 60 * 60
        assert body["retryAfter"] % 60 == 0
        assert int(locked.headers["Retry-After"]) == body["retryAfter"]


class TestTokens:
    def test_me_requires_authentication(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["error"] == "Authentication required"

        bad = client.get("/api/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert bad.status_code == 401

    def test_me_returns_current_account(self, client):
        body = _register(client)
        response = client.get("/api/auth/me", headers=_auth_header(body["tokens"]))
        assert response.status_code == 200
        assert response.json()["user"]["id"] == body["user"]["id"]

    def test_refresh_token_cannot_authenticate(self, client):
        body = _register(client)
        response = client.get(
            "/api/auth/me",
            headers={"Authorization": f"Bearer {body['tokens']['refreshToken']}"},
        )
        assert response.status_code == 401

    def test_refresh_rotates_and_replay_is_rejected(self, client):
        tokens = _register(client)["tokens"]
        first = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert first.status_code == 200
        rotated = first.json()["tokens"]
        assert rotated["refreshToken"] != tokens["refreshToken"]

        replay = client.post("/api/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert replay.status_code == 401

        again = client.post("/api/auth/refresh", json={"refreshToken": rotated["refreshToken"]})
        assert again.status_code == 200

    def test_refresh_rejects_access_token(self, client):
        tokens = _register(client)["tokens"]
        response = client.post("/api/auth/refresh", json={"refreshToken": tokens["accessToken"]})
        assert response.status_code == 401


class TestChangePassword:
    def test_wrong_current_password_is_400_and_hash_unchanged(self, client):
        body = _register(client)
        account_id = body["user"]["id"]
        before = get_runtime().store.get_account(account_id).password_hash

        response = client.put(
            "/api/auth/change-password",
            json={"currentPassword": "Wrong#Passw0rd", "newPassword": "N3w#Passw0rd!"},
            headers=_auth_header(body["tokens"]),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Current password is incorrect"
        assert get_runtime().store.get_account(account_id).password_hash == before

    def test_change_password(self, client):
        body = _register(client)
        response = client.put(
            "/api/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "N3w#Passw0rd!"},
            headers=_auth_header(body["tokens"]),
        )
        assert response.status_code == 200
        assert response.json()["message"] == "Password changed successfully"

        login = client.post(
            "/api/auth/login",
            json={"email": "shopper@example.com", "password": "N3w#Passw0rd!"},
        )
        assert login.status_code == 200

    def test_weak_new_password_rejected(self, client):
        body = _register(client)
        response = client.put(
            "/api/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "weak"},
            headers=_auth_header(body["tokens"]),
        )
        assert response.status_code == 400
        assert "newPassword" in [d["field"] for d in response.json()["details"]]

    def test_requires_authentication(self, client):
        response = client.put(
            "/api/auth/change-password",
            json={"currentPassword": PASSWORD, "newPassword": "N3w#Passw0rd!"},
        )
        assert response.status_code == 401


class TestTwoFactor:
    def test_customers_cannot_start_setup(self, client):
        body = _register(client)
        response = client.post("/api/auth/2fa/setup", headers=_auth_header(body["tokens"]))
        assert response.status_code == 403
        assert response.json()["error"] == "Access denied"

    def test_setup_returns_qr_and_secret(self, client):
        tokens = _make_admin(client)["tokens"]
        response = client.post("/api/auth/2fa/setup", headers=_auth_header(tokens))
        body = response.json()
        assert response.status_code == 200
        assert body["qrCode"].startswith("data:image/png;base64,")
        assert body["otpauthUrl"].startswith("otpauth://totp/")
        assert len(body["backupCodes"]) == 10
        assert len(body["secret"]) >= 32

    def test_verify_before_setup(self, client):
        tokens = _make_admin(client)["tokens"]
        response = client.post(
            "/api/auth/2fa/verify", json={"token": "123456"}, headers=_auth_header(tokens)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Two-factor setup not initiated"
        assert response.json()["details"] == [
            {"field": "body", "message": "Two-factor setup not initiated"}
        ]

    def test_login_challenge_then_totp(self, client):
        tokens = _make_admin(client)["tokens"]
        secret, _ = _enroll_two_factor(client, tokens)

        challenge = client.post(
            "/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD}
        )
        assert challenge.status_code == 200
        assert challenge.json() == {
            "message": "Two-factor authentication required",
            "requiresTwoFactor": True,
        }

        response = client.post(
            "/api/auth/login",
            json={
                "email": "admin@example.com",
                "password": PASSWORD,
                "twoFactorToken": pyotp.TOTP(secret).now(),
            },
        )
        assert response.status_code == 200
        assert response.json()["user"]["twoFactorEnabled"] is True

    def test_backup_code_after_wrong_totp_is_consumed(self, client):
        body = _make_admin(client)
        secret, backup_codes = _enroll_two_factor(client, body["tokens"])
        account_id = body["user"]["id"]
        assert len(get_runtime().store.get_account(account_id).backup_codes) == 10

        wrong = client.post(
            "/api/auth/login",
            json={"email": "admin@example.com", "password": PASSWORD, "twoFactorToken": "000000"},
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"] == "Invalid two-factor authentication code"

        response = client.post(
            "/api/auth/login",
            json={
                "email": "admin@example.com",
                "password": PASSWORD,
                "twoFactorToken": backup_codes[3],
            },
        )
        assert response.status_code == 200
        assert len(get_runtime().store.get_account(account_id).backup_codes) == 9

        reused = client.post(
            "/api/auth/login",
            json={
                "email": "admin@example.com",
                "password": PASSWORD,
                "twoFactorToken": backup_codes[3],
            },
        )
        assert reused.status_code == 401

    def test_too_many_codes_rate_limited(self, client):
        tokens = _make_admin(client)["tokens"]
        _enroll_two_factor(client, tokens)
        payload = {"email": "admin@example.com", "password": PASSWORD, "twoFactorToken": "000000"}
        for _ in range(5):
            assert client.post("/api/auth/login", json=payload).status_code == 401
        limited = client.post("/api/auth/login", json=payload)
        assert limited.status_code == 429
        body = limited.json()
        assert body["error"].startswith("Too many 2FA attempts")
        assert body["retryAfter"] > 0
        assert "Retry-After" in limited.headers

    def test_disable(self, client):
        tokens = _make_admin(client)["tokens"]
        secret, _ = _enroll_two_factor(client, tokens)

        wrong_password = client.post(
            "/api/auth/2fa/disable",
            json={"password": "Wrong#Passw0rd", "token": pyotp.TOTP(secret).now()},
            headers=_auth_header(tokens),
        )
        assert wrong_password.status_code == 401

        response = client.post(
            "/api/auth/2fa/disable",
            json={"password": PASSWORD, "token": pyotp.TOTP(secret).now()},
            headers=_auth_header(tokens),
        )
        assert response.status_code == 200
        me = client.get("/api/auth/me", headers=_auth_header(tokens))
        assert me.json()["user"]["twoFactorEnabled"] is False

        login = client.post(
            "/api/auth/login", json={"email": "admin@example.com", "password": PASSWORD}
        )
        assert "tokens" in login.json()


class TestInfrastructure:
    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["cache"]["type"] == "LocalCache"

    def test_security_headers(self, client):
        response = client.get("/api/auth/me")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]
