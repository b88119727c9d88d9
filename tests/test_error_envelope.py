"""Tests for the response envelope and error handling.

Every response, success or failure, has the same shape:
{
    "success": <bool>,
    "message": <str|null>,
    "data": <any>,
    "error": "<stable_code>" | null,
    "details": <object|array|null>,
    "request_id": "<id>"
}
"""

import json

import pytest
from fastapi.testclient import TestClient

from warden import app as app_module
from warden.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, _error_response
from warden.api.schemas import Envelope, snake_keys

ENVELOPE_KEYS = {"success", "message", "data", "error", "details", "request_id"}


@pytest.fixture
def client():
    return TestClient(app_module.app)


class TestEnvelopeModel:
    """Tests for the Envelope model."""

    def test_defaults_to_success(self):
        envelope = Envelope(data={"ok": 1})
        assert envelope.success is True
        assert envelope.error is None

    def test_serializes_all_keys(self):
        assert set(Envelope().model_dump()) == ENVELOPE_KEYS

    def test_snake_keys_normalizes_camel_case(self):
        assert snake_keys({"mfaMode": 1, "code_format": 2}) == {"mfa_mode": 1, "code_format": 2}


class TestErrorResponse:
    """Tests for the error response builder."""

    @pytest.mark.parametrize("status,code", sorted(_STATUS_TO_CODE.items()))
    def test_status_codes_map_to_stable_codes(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_body_shape(self):
        response = _error_response(404, "missing", {"id": "x"})
        body = json.loads(response.body)

        assert response.status_code == 404
        assert body["success"] is False
        assert body["error"] == "not_found"
        assert body["details"] == {"id": "x"}

    def test_headers_forwarded(self):
        response = _error_response(429, "slow down", headers={"Retry-After": "30"})
        assert response.headers["Retry-After"] == "30"


class TestOverHttp:
    """Tests for envelopes produced by the running app."""

    def test_validation_error_is_400_with_fields(self, client):
        response = client.post("/auth/register", json={"email": "a@example.com"})

        assert response.status_code == 400
        body = response.json()
        assert set(body) == ENVELOPE_KEYS
        assert body["error"] == "validation_error"
        fields = {d["field"] for d in body["details"]}
        assert {"username", "password"} <= fields

    def test_missing_token_is_401(self, client):
        response = client.get("/me")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthorized"

    def test_unknown_route_is_404_envelope(self, client):
        response = client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_request_id_echoed(self, client):
        response = client.get("/me", headers={"X-Request-ID": "req-12345"})

        assert response.headers["X-Request-ID"] == "req-12345"
        assert response.json()["request_id"] == "req-12345"

    def test_request_id_generated(self, client):
        response = client.post("/auth/refresh", json={"refreshToken": "garbage"})

        assert response.headers["X-Request-ID"]
        assert response.json()["request_id"] == response.headers["X-Request-ID"]

    def test_rate_limit_sets_retry_after(self, client):
        payload = {"identifier": "ghost@example.com", "password": "Whatever123!"}
        statuses = [client.post("/auth/login", json=payload) for _ in range(11)]

        limited = statuses[-1]
        assert [r.status_code for r in statuses[:10]] == [401] * 10
        assert limited.status_code == 429
        assert limited.json()["error"] == "rate_limited"
        assert int(limited.headers["Retry-After"]) >= 1

    def test_security_headers(self, client):
        response = client.get("/healthz")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in response.headers["Cache-Control"]


class TestHealth:
    def test_healthz_reports_components(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
