from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - validation_error (400)
    - invalid_token (400)
    - token_expired (400)
    - signature_invalid (400)
    - unauthorized (401)
    - conflict (409)
    - rate_limited (429)
    - not_configured (500)
    - upstream_error (502)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidTokenError(ServiceError):
    """Token or code did not match; deliberately generic (400)."""
    status_code = 400
    error_code = "invalid_token"


class TokenExpiredError(InvalidTokenError):
    """Token matched but its lifetime has passed (400)."""
    error_code = "token_expired"


class SignatureInvalidError(ServiceError):
    """Signed payload failed verification (400)."""
    status_code = 400
    error_code = "signature_invalid"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class NotConfiguredError(ServiceError):
    """A required secret or URL is missing (500)."""
    status_code = 500
    error_code = "not_configured"


class UpstreamError(ServiceError):
    """External provider or backend failed; details stay in the logs (502)."""
    status_code = 502
    error_code = "upstream_error"


class UpstreamRelayError(UpstreamError):
    """Backend error relayed to the caller with the backend's own status."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message, status_code=status_code)


class ServiceUnavailableError(ServiceError):
    """Dependency unreachable or not configured; retry later (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "SignatureInvalidError",
    "AuthenticationError",
    "ConflictError",
    "RateLimitedError",
    "NotConfiguredError",
    "UpstreamError",
    "UpstreamRelayError",
    "ServiceUnavailableError",
]
