"""End-to-end tests for the HTTP surface.

Covers:
- Password reset by emailed link (request, verify, consume)
- OTP relay error mapping
- Google OAuth start and callback redirects
- Sign-up, sign-in and logout cookies
- Billing webhook and checkout configuration errors
- Rate limiting and the error envelope
"""

import json
import time
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from refinergate import app as app_module
from refinergate.service.billing import compute_signature
from refinergate.service.oauth import GOOGLE_PROVIDER
from refinergate.service.runtime import get_runtime, reset_runtime_for_tests


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def configure(monkeypatch):
    """Apply environment overrides and rebuild the runtime."""

    def _configure(**env):
        for name, value in env.items():
            monkeypatch.setenv(name, value)
        return reset_runtime_for_tests()

    return _configure


@pytest.fixture
def registered(client):
    response = client.post(
        "/api/auth/signup",
        json={
            "email": "member@example.com",
            "password": "original-password",
            "firstName": "Mem",
            "lastName": "Ber",
        },
    )
    assert response.status_code == 200
    client.cookies.clear()
    return response.json()["user"]


def _error(response):
    body = response.json()
    assert body["success"] is False
    return body["error"]


class TestPasswordResetFlow:
    def test_full_reset_cycle(self, client, registered):
        issued = client.post("/api/auth/forgot-password", json={"email": "member@example.com"})
        assert issued.status_code == 200
        token = issued.json()["token"]
        assert issued.json()["resetUrl"].startswith("http://localhost:3000/auth/reset-password?token=")

        verified = client.post(
            "/api/auth/verify-reset-token", json={"token": token, "email": "member@example.com"}
        )
        assert verified.json() == {"success": True, "message": "Token is valid"}

        reset = client.post(
            "/api/auth/reset-password",
            json={"token": token, "email": "member@example.com", "newPassword": "replacement-pw"},
        )
        assert reset.status_code == 200
        assert reset.json()["success"] is True

        old = client.post(
            "/api/auth/signin", json={"email": "member@example.com", "password": "original-password"}
        )
        assert old.status_code == 401
        new = client.post(
            "/api/auth/signin", json={"email": "member@example.com", "password": "replacement-pw"}
        )
        assert new.status_code == 200

        replay = client.post(
            "/api/auth/reset-password",
            json={"token": token, "email": "member@example.com", "newPassword": "third-password"},
        )
        assert replay.status_code == 400
        assert _error(replay)["code"] == "invalid_token"

    def test_identical_responses_without_exposure(self, client, configure):
        configure(EXPOSE_RESET_TOKENS="false")
        client.post(
            "/api/auth/signup",
            json={
                "email": "member@example.com",
                "password": "original-password",
                "firstName": "Mem",
                "lastName": "Ber",
            },
        )
        known = client.post("/api/auth/forgot-password", json={"email": "member@example.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert "token" not in known.json()

    def test_invalid_token_format(self, client):
        response = client.post(
            "/api/auth/verify-reset-token", json={"token": "abc", "email": "a@example.com"}
        )
        assert response.status_code == 400
        assert _error(response) == {"code": "validation_error", "message": "Invalid token format"}

    def test_missing_email(self, client):
        response = client.post("/api/auth/forgot-password", json={})
        assert response.status_code == 400
        assert _error(response)["message"] == "Valid email address is required"

    def test_malformed_json(self, client):
        response = client.post(
            "/api/auth/forgot-password",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert _error(response)["code"] == "validation_error"

    def test_rate_limited(self, client, configure):
        configure(RESET_RATE_LIMIT_PER_MINUTE="2")
        statuses = [
            client.post("/api/auth/forgot-password", json={"email": "spam@example.com"}).status_code
            for _ in range(3)
        ]
        assert statuses == [200, 200, 429]
        limited = client.post("/api/auth/forgot-password", json={"email": "spam@example.com"})
        assert _error(limited)["code"] == "rate_limited"
        assert "Retry-After" in limited.headers


class TestOtpRelay:
    def test_unconfigured_backend_is_503(self, client):
        response = client.post("/api/auth/request-password-reset", json={"email": "a@example.com"})
        assert response.status_code == 503
        assert _error(response)["code"] == "service_unavailable"

    def test_malformed_otp_rejected_locally(self, client):
        response = client.post("/api/auth/verify-otp", json={"email": "a@example.com", "otp": "12ab"})
        assert response.status_code == 400
        assert "6-digit" in _error(response)["message"]

    def test_backend_status_is_relayed(self, client, configure):
        runtime = configure(REFINER_BACKEND_URL="https://backend.example.com")
        runtime.otp.transport = httpx.MockTransport(
            lambda request: httpx.Response(404, json={"detail": "No OTP pending"})
        )
        response = client.post("/api/auth/verify-otp", json={"email": "a@example.com", "otp": "123456"})
        assert response.status_code == 404
        assert _error(response) == {"code": "upstream_error", "message": "No OTP pending"}

    def test_successful_verify(self, client, configure):
        runtime = configure(REFINER_BACKEND_URL="https://backend.example.com")
        runtime.otp.transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"temp_token": "tmp-1"})
        )
        response = client.post("/api/auth/verify-otp", json={"email": "a@example.com", "otp": "123456"})
        assert response.status_code == 200
        assert response.json()["temp_token"] == "tmp-1"
        assert response.json()["expires_in"] == 300


class TestGoogleOAuth:
    def _configure_google(self, configure):
        runtime = configure(GOOGLE_CLIENT_ID="cid", GOOGLE_CLIENT_SECRET="csecret")

        def google(request):
            if str(request.url) == GOOGLE_PROVIDER["token_url"]:
                return httpx.Response(200, json={"access_token": "at"})
            return httpx.Response(
                200, json={"id": "g-7", "email": "oauth@example.com", "name": "O Auth"}
            )

        runtime.oauth.transport = httpx.MockTransport(google)
        return runtime

    def test_start_without_configuration_is_json_500(self, client):
        response = client.get("/api/auth/google", follow_redirects=False)
        assert response.status_code == 500
        assert _error(response)["code"] == "not_configured"

    def test_start_redirects_and_sets_state_cookie(self, client, configure):
        self._configure_google(configure)
        response = client.get("/api/auth/google", follow_redirects=False)
        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        params = parse_qs(location.query)
        assert params["redirect_uri"] == ["http://localhost:3000/api/auth/google/callback"]
        state_cookie = next(
            c for c in response.headers.get_list("set-cookie") if c.startswith("oauth_state=")
        )
        assert f"oauth_state={params['state'][0]}" in state_cookie
        assert "HttpOnly" in state_cookie
        assert "Max-Age=600" in state_cookie

    def test_callback_state_mismatch(self, client, configure):
        runtime = self._configure_google(configure)
        calls = []
        runtime.oauth.transport = httpx.MockTransport(
            lambda request: calls.append(request) or httpx.Response(500)
        )
        client.cookies.set("oauth_state", "expected")
        response = client.get(
            "/api/auth/google/callback?code=c&state=forged", follow_redirects=False
        )
        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert parse_qs(location.query)["login"] == ["1"]
        assert "Invalid OAuth state" in parse_qs(location.query)["error"][0]
        assert calls == []
        cookies = response.headers.get_list("set-cookie")
        assert any(c.startswith('oauth_state=""') or c.startswith("oauth_state=;") for c in cookies)
        assert not any(c.startswith("refiner_auth=") for c in cookies)

    @pytest.mark.parametrize(
        "query",
        [
            {"code": "x" * 3000, "state": "abc"},
            {"code": "c", "state": "s" * 300},
            {"error": "e" * 500, "state": "abc"},
        ],
    )
    def test_oversized_callback_params_still_redirect(self, client, configure, query):
        self._configure_google(configure)
        client.cookies.set("oauth_state", "abc")
        response = client.get(
            "/api/auth/google/callback", params=query, follow_redirects=False
        )
        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert parse_qs(location.query)["login"] == ["1"]
        cookies = response.headers.get_list("set-cookie")
        cleared = next(c for c in cookies if c.startswith("oauth_state="))
        assert "Max-Age=0" in cleared
        assert not any(c.startswith("refiner_auth=") for c in cookies)

    def test_callback_success_sets_session(self, client, configure):
        self._configure_google(configure)
        client.cookies.set("oauth_state", "st-1")
        response = client.get("/api/auth/google/callback?code=c&state=st-1", follow_redirects=False)
        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.path == "/auth/google/success"
        fragment = parse_qs(location.fragment)
        assert json.loads(fragment["user"][0])["email"] == "oauth@example.com"

        cookies = response.headers.get_list("set-cookie")
        session_cookie = next(c for c in cookies if c.startswith("refiner_auth="))
        assert f"refiner_auth={fragment['token'][0]}" in session_cookie
        assert "HttpOnly" not in session_cookie
        assert sum(1 for c in cookies if c.startswith("oauth_state=")) == 1
        assert get_runtime().sessions.read(fragment["token"][0])["email"] == "oauth@example.com"


class TestAccounts:
    def test_signup_sets_cookie(self, client):
        response = client.post(
            "/api/auth/signup",
            json={
                "email": "new@example.com",
                "password": "long-password",
                "firstName": "New",
                "lastName": "User",
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["user"]["firstName"] == "New"
        assert "password" not in json.dumps(body["user"])
        assert client.cookies.get("refiner_auth") == body["token"]

    def test_duplicate_signup(self, client, registered):
        response = client.post(
            "/api/auth/signup",
            json={
                "email": "member@example.com",
                "password": "long-password",
                "firstName": "A",
                "lastName": "B",
            },
        )
        assert response.status_code == 409
        assert _error(response)["code"] == "conflict"

    def test_logout_clears_cookie(self, client, registered):
        client.post(
            "/api/auth/signin", json={"email": "member@example.com", "password": "original-password"}
        )
        assert client.cookies.get("refiner_auth")
        response = client.post("/api/auth/logout")
        assert response.json() == {"ok": True}
        cleared = next(
            c for c in response.headers.get_list("set-cookie") if c.startswith("refiner_auth=")
        )
        assert "Max-Age=0" in cleared


class TestBilling:
    def test_webhook_without_secret(self, client):
        response = client.post(
            "/api/stripe/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=aa"}
        )
        assert response.status_code == 400
        assert _error(response)["message"] == "Webhook not configured"

    def test_signed_webhook_acknowledged(self, client, configure):
        configure(STRIPE_WEBHOOK_SECRET="whsec_int")
        payload = json.dumps(
            {"id": "evt", "type": "checkout.session.completed", "data": {"object": {"id": "cs", "customer": "cus"}}}
        ).encode()
        ts = int(time.time())
        header = f"t={ts},v1={compute_signature('whsec_int', ts, payload)}"
        response = client.post(
            "/api/stripe/webhook", content=payload, headers={"Stripe-Signature": header}
        )
        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert len(get_runtime().stores.acquire().list_audit_entries()) == 1

    def test_bad_signature(self, client, configure):
        configure(STRIPE_WEBHOOK_SECRET="whsec_int")
        response = client.post(
            "/api/stripe/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=aa"}
        )
        assert response.status_code == 400
        assert _error(response)["code"] == "signature_invalid"

    def test_checkout_not_configured(self, client):
        response = client.post("/api/stripe/create-checkout-session", json={"priceId": "price_1"})
        assert response.status_code == 500
        assert _error(response)["message"] == "Stripe not configured"


class TestPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["store"]["type"] == "memory"

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
