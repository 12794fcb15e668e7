"""Error envelope format and exception mapping.

Every failure leaves the API as:
{
    "success": false,
    "error": {"code": "<stable_code>", "message": "<human_readable>"}
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from refinergate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from refinergate.api.routes import _http_error
from refinergate.api.schemas import ErrorBody, ErrorEnvelope
from refinergate.service.errors import (
    InvalidTokenError,
    ServiceUnavailableError,
    UpstreamRelayError,
)
from refinergate.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid email or password")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_missing_message_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")

    def test_unknown_code_collapses_to_server_error(self):
        assert ErrorBody(code="teapot", message="x").code == "server_error"

    def test_envelope_defaults_to_failure(self):
        envelope = ErrorEnvelope(error=ErrorBody(code="conflict", message="taken"))
        assert envelope.model_dump(exclude_none=True) == {
            "success": False,
            "error": {"code": "conflict", "message": "taken"},
        }


class TestStatusMapping:
    @pytest.mark.parametrize("status, code", sorted(_STATUS_TO_CODE.items()))
    def test_known_statuses(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_body(self):
        response = _error_response(400, "Invalid token format")
        assert response.status_code == 400
        assert json.loads(response.body) == {
            "success": False,
            "error": {"code": "validation_error", "message": "Invalid token format"},
        }


@pytest.fixture
def probe_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/invalid-token")
    async def invalid_token():
        raise InvalidTokenError("Invalid or expired reset token")

    @app.get("/relay")
    async def relay():
        raise UpstreamRelayError("No OTP pending", status_code=404)

    @app.get("/unavailable")
    async def unavailable():
        raise ServiceUnavailableError("Backend not configured")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("email already registered", {"field": "email"})

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("pool exhausted")

    @app.get("/limited")
    async def limited():
        raise _http_error("rate_limited", "Slow down", 429, headers={"Retry-After": "7"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("connection string with secrets")

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "path, status, code",
    [
        ("/invalid-token", 400, "invalid_token"),
        ("/relay", 404, "upstream_error"),
        ("/unavailable", 503, "service_unavailable"),
        ("/conflict", 409, "conflict"),
        ("/store-down", 503, "service_unavailable"),
        ("/limited", 429, "rate_limited"),
        ("/boom", 500, "server_error"),
    ],
)
def test_exceptions_map_to_envelope(probe_client, path, status, code):
    response = probe_client.get(path)
    assert response.status_code == status
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == code


def test_internal_errors_hide_details(probe_client):
    body = probe_client.get("/boom").json()
    assert body["error"]["message"] == "Internal server error"
    assert "secrets" not in json.dumps(body)


def test_http_error_headers_survive(probe_client):
    response = probe_client.get("/limited")
    assert response.headers["Retry-After"] == "7"
    assert response.json()["error"]["message"] == "Slow down"
