"""Tests for the OTP reset relay using an in-process mock backend."""

import json

import httpx
import pytest

from refinergate.config import Deployment
from refinergate.service.errors import (
    ServiceUnavailableError,
    UpstreamRelayError,
    ValidationError,
)
from refinergate.service.otp import OTP_FORMAT_MESSAGE, OtpResetProxy

BACKEND = "https://backend.example.com/"


def _deployment(backend_configured=True) -> Deployment:
    return Deployment(
        is_production=False,
        backend_configured=backend_configured,
        oauth_configured=False,
        webhook_configured=False,
        checkout_configured=False,
        email_configured=False,
        expose_reset_tokens=False,
    )


class Backend:
    """Records requests and answers with a queued response."""

    def __init__(self, status_code=200, body=None):
        self.requests = []
        self.status_code = status_code
        self.body = body if body is not None else {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


def _proxy(handler, *, configured=True):
    return OtpResetProxy(
        _deployment(configured),
        backend_url=BACKEND if configured else None,
        api_key="backend-key",
        transport=httpx.MockTransport(handler),
    )


class TestRequestOtp:
    async def test_relays_request_with_api_key(self):
        backend = Backend(body={"message": "sent", "expires_in": 900})
        result = await _proxy(backend).request_otp(" User@Example.com")
        assert result == {"success": True, "message": "sent", "expires_in": 900}

        request = backend.requests[0]
        assert str(request.url) == "https://backend.example.com/auth/request-password-reset"
        assert request.headers["X-API-Key"] == "backend-key"
        assert json.loads(request.content) == {"email": "user@example.com"}

    async def test_defaults_when_backend_is_terse(self):
        result = await _proxy(Backend()).request_otp("user@example.com")
        assert result["expires_in"] == 600
        assert "OTP has been sent" in result["message"]

    async def test_rejects_bad_email_locally(self):
        backend = Backend()
        with pytest.raises(ValidationError):
            await _proxy(backend).request_otp("not-an-email")
        assert backend.requests == []

    async def test_backend_error_relayed_with_status(self):
        backend = Backend(status_code=429, body={"detail": "Too many OTP requests"})
        with pytest.raises(UpstreamRelayError) as exc:
            await _proxy(backend).request_otp("user@example.com")
        assert exc.value.status_code == 429
        assert exc.value.message == "Too many OTP requests"

    async def test_backend_error_without_body_uses_default(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        with pytest.raises(UpstreamRelayError) as exc:
            await _proxy(handler).request_otp("user@example.com")
        assert exc.value.status_code == 500
        assert exc.value.message == "Failed to send OTP"

    async def test_unconfigured_backend_is_unavailable(self):
        backend = Backend()
        with pytest.raises(ServiceUnavailableError) as exc:
            await _proxy(backend, configured=False).request_otp("user@example.com")
        assert exc.value.status_code == 503
        assert backend.requests == []

    async def test_unreachable_backend_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ServiceUnavailableError):
            await _proxy(handler).request_otp("user@example.com")

    async def test_timeout_is_unavailable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(ServiceUnavailableError):
            await _proxy(handler).request_otp("user@example.com")


class TestVerifyOtp:
    @pytest.mark.parametrize("otp", ["12345", "1234567", "abcdef", "12 456", "", None])
    async def test_malformed_otp_never_reaches_backend(self, otp):
        backend = Backend()
        with pytest.raises(ValidationError) as exc:
            await _proxy(backend).verify_otp("user@example.com", otp)
        assert exc.value.message == OTP_FORMAT_MESSAGE
        assert backend.requests == []

    async def test_relays_temp_token(self):
        backend = Backend(body={"message": "ok", "temp_token": "tmp-123"})
        result = await _proxy(backend).verify_otp("user@example.com", "123456")
        assert result == {
            "success": True,
            "message": "ok",
            "temp_token": "tmp-123",
            "expires_in": 300,
        }
        assert json.loads(backend.requests[0].content) == {
            "email": "user@example.com",
            "otp": "123456",
        }

    async def test_wrong_code_relays_backend_message(self):
        backend = Backend(status_code=400, body={"message": "Invalid or expired OTP"})
        with pytest.raises(UpstreamRelayError) as exc:
            await _proxy(backend).verify_otp("user@example.com", "654321")
        assert exc.value.status_code == 400
        assert exc.value.message == "Invalid or expired OTP"


class TestResetWithOtp:
    async def test_posts_new_password_with_temp_token(self):
        backend = Backend(body={})
        result = await _proxy(backend).reset_with_otp(
            "user@example.com", "tmp-123", "a-strong-password"
        )
        assert result["success"] is True
        request = backend.requests[0]
        assert request.url.path == "/auth/reset-password"
        assert json.loads(request.content) == {
            "email": "user@example.com",
            "token": "tmp-123",
            "new_password": "a-strong-password",
        }

    async def test_password_policy_checked_locally(self):
        backend = Backend()
        with pytest.raises(ValidationError):
            await _proxy(backend).reset_with_otp("user@example.com", "tmp-123", "short")
        assert backend.requests == []

    async def test_missing_temp_token(self):
        backend = Backend()
        with pytest.raises(ValidationError):
            await _proxy(backend).reset_with_otp("user@example.com", "", "a-strong-password")
        assert backend.requests == []
