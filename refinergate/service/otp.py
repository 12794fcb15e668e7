from __future__ import annotations

import re
from typing import Any, Dict, Optional

import httpx

from refinergate.config import Deployment
from refinergate.logging import email_fingerprint, get_logger
from refinergate.service.credentials import require_email, require_password
from refinergate.service.errors import (
    ServiceUnavailableError,
    UpstreamRelayError,
    ValidationError,
)

logger = get_logger(__name__)

OTP_RE = re.compile(r"^\d{6}$")

OTP_FORMAT_MESSAGE = "Invalid OTP format. Please enter a 6-digit code."
OTP_SENT_MESSAGE = "If an account with that email exists, an OTP has been sent."
OTP_VERIFIED_MESSAGE = "OTP verified successfully"
OTP_RESET_DONE_MESSAGE = (
    "Password has been reset successfully. You can now sign in with your new password."
)
DEFAULT_OTP_TTL_SECONDS = 600
DEFAULT_TEMP_TOKEN_TTL_SECONDS = 300


class OtpResetProxy:
    """Relays the OTP password-reset flow to the identity backend.

    Input shape is checked here so malformed requests never leave the
    process. The backend's own error message and status are relayed as-is;
    an absent or unreachable backend is reported as 503.
    """

    def __init__(
        self,
        deployment: Deployment,
        *,
        backend_url: Optional[str],
        api_key: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.deployment = deployment
        self.backend_url = backend_url.rstrip("/") if backend_url else None
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def _post(self, path: str, payload: Dict[str, Any], *, default_error: str) -> Dict[str, Any]:
        if not self.deployment.backend_configured or not self.backend_url:
            logger.warning("otp_backend_not_configured", path=path)
            raise ServiceUnavailableError("Backend not configured")

        url = f"{self.backend_url}{path}"
        headers = {"Content-Type": "application/json", "X-API-Key": self.api_key or ""}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport, follow_redirects=False
            ) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("otp_backend_timeout", path=path, timeout=self.timeout, error=str(exc))
            raise ServiceUnavailableError("Backend did not respond. Please try again later.")
        except httpx.TransportError as exc:
            logger.error("otp_backend_unreachable", path=path, error=str(exc))
            raise ServiceUnavailableError("Backend unavailable. Please try again later.")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if not response.is_success:
            message = data.get("detail") or data.get("message") or default_error
            if not isinstance(message, str):
                message = default_error
            logger.warning(
                "otp_backend_rejected", path=path, status_code=response.status_code
            )
            raise UpstreamRelayError(message, status_code=response.status_code)
        return data

    async def request_otp(self, email: Any) -> Dict[str, Any]:
        normalized = require_email(email)
        data = await self._post(
            "/auth/request-password-reset",
            {"email": normalized},
            default_error="Failed to send OTP",
        )
        logger.info("otp_requested", account=email_fingerprint(normalized))
        return {
            "success": True,
            "message": data.get("message") or OTP_SENT_MESSAGE,
            "expires_in": data.get("expires_in") or DEFAULT_OTP_TTL_SECONDS,
        }

    async def verify_otp(self, email: Any, otp: Any) -> Dict[str, Any]:
        normalized = require_email(email)
        if not isinstance(otp, str) or not OTP_RE.match(otp):
            raise ValidationError(OTP_FORMAT_MESSAGE)
        data = await self._post(
            "/auth/verify-otp",
            {"email": normalized, "otp": otp},
            default_error="Invalid OTP",
        )
        return {
            "success": True,
            "message": data.get("message") or OTP_VERIFIED_MESSAGE,
            "temp_token": data.get("temp_token"),
            "expires_in": data.get("expires_in") or DEFAULT_TEMP_TOKEN_TTL_SECONDS,
        }

    async def reset_with_otp(
        self, email: Any, temp_token: Any, new_password: Any
    ) -> Dict[str, Any]:
        """Finish the OTP flow by setting a new password with the temp token."""
        if not isinstance(temp_token, str) or not temp_token.strip():
            raise ValidationError("Invalid token format")
        normalized = require_email(email)
        password = require_password(new_password)
        data = await self._post(
            "/auth/reset-password",
            {"email": normalized, "token": temp_token, "new_password": password},
            default_error="Failed to reset password",
        )
        return {"success": True, "message": data.get("message") or OTP_RESET_DONE_MESSAGE}
