"""Tests for the JSON error contract.

Every error body carries ``error`` (human readable) and ``code`` (stable);
validation failures add ``details`` and throttling adds ``retryAfter``.
"""

import json

import pytest
from fastapi.testclient import TestClient

from storefront_auth.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from storefront_auth.app import create_app
from storefront_auth.config import reset_settings_cache
from storefront_auth.service.errors import (
    AuthenticationError,
    LockedAccountError,
    RateLimitedError,
    ValidationError,
)


def _failing_app():
    app = create_app()

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password is hunter2")

    @app.get("/invalid")
    async def invalid():
        raise ValidationError("Cannot delete your own account")

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("Slow down", retry_after=42)

    return app


class TestErrorResponse:
    def test_status_codes_map_to_stable_codes(self):
        assert _STATUS_TO_CODE[423] == "account_locked"
        assert _error_code_for_status(429) == "rate_limited"
        assert _error_code_for_status(502) == "server_error"
        assert _error_code_for_status(418) == "request_error"

    def test_optional_fields_are_omitted(self):
        response = _error_response(401, "Invalid credentials")
        assert json.loads(response.body) == {
            "error": "Invalid credentials",
            "code": "unauthorized",
        }
        assert "retry-after" not in response.headers

    def test_validation_errors_always_carry_details(self):
        response = _error_response(400, "Two-factor setup not initiated")
        assert json.loads(response.body)["details"] == [
            {"field": "body", "message": "Two-factor setup not initiated"}
        ]

    def test_field_details_are_kept(self):
        details = [{"field": "email", "message": "Email already registered"}]
        response = _error_response(400, "Email already registered", details=details)
        assert json.loads(response.body)["details"] == details

    def test_retry_after_sets_header(self):
        response = _error_response(429, "Too many", retry_after=90)
        assert json.loads(response.body)["retryAfter"] == 90
        assert response.headers["retry-after"] == "90"


class TestServiceErrors:
    def test_retry_after_is_at_least_one_second(self):
        assert LockedAccountError("locked", retry_after=0).retry_after == 1

    def test_status_codes(self):
        assert ValidationError("bad").status_code == 400
        assert AuthenticationError("no").status_code == 401
        assert LockedAccountError("locked", retry_after=5).status_code == 423
        assert RateLimitedError("slow", retry_after=5).status_code == 429


class TestHandlers:
    def test_unhandled_error_is_generic_in_production(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        reset_settings_cache()
        client = TestClient(_failing_app(), raise_server_exceptions=False)
        response = client.get("/boom")
        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "Internal server error"
        assert body["message"] == "Something went wrong"
        assert "hunter2" not in response.text

    def test_unhandled_error_shows_message_in_development(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "development")
        reset_settings_cache()
        client = TestClient(_failing_app(), raise_server_exceptions=False)
        response = client.get("/boom")
        assert response.status_code == 500
        assert response.json()["message"] == "database password is hunter2"

    def test_rate_limited_body_and_header(self):
        client = TestClient(_failing_app())
        response = client.get("/limited")
        assert response.status_code == 429
        assert response.json() == {"error": "Slow down", "code": "rate_limited", "retryAfter": 42}
        assert response.headers["Retry-After"] == "42"

    def test_service_validation_error_has_details(self):
        client = TestClient(_failing_app())
        response = client.get("/invalid")
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == "validation_error"
        assert body["details"] == [
            {"field": "body", "message": "Cannot delete your own account"}
        ]

    def test_unknown_route_uses_error_contract(self):
        client = TestClient(_failing_app())
        response = client.get("/api/nope")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"
        assert "error" in response.json()

    @pytest.mark.parametrize("body", ["not json", "[]"])
    def test_malformed_body_is_400(self, body):
        client = TestClient(_failing_app())
        response = client.post(
            "/api/auth/login", content=body, headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Validation failed"
