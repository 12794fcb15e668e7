from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Request fields are all optional; services check presence and shape and
# report each flow's own error message.
MAX_FIELD_LENGTH = 2048
MAX_METADATA_KEYS = 50

_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "invalid_token",
    "token_expired",
    "signature_invalid",
    "unauthorized",
    "conflict",
    "rate_limited",
    "not_configured",
    "upstream_error",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error payload with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            return "server_error"
        return value


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ForgotPasswordRequest(_Body):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


class VerifyResetTokenRequest(_Body):
    token: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


class ResetPasswordRequest(_Body):
    token: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_FIELD_LENGTH
    )


class OtpRequest(_Body):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


class OtpVerifyRequest(_Body):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    otp: Optional[str] = Field(default=None, max_length=64)


class OtpResetRequest(_Body):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    temp_token: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=MAX_FIELD_LENGTH
    )


class SignupRequest(_Body):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=256)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=256)


class SigninRequest(_Body):
    email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    password: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)


class CheckoutSessionRequest(_Body):
    price_id: Optional[str] = Field(default=None, alias="priceId", max_length=256)
    customer_email: Optional[str] = Field(default=None, max_length=MAX_FIELD_LENGTH)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("metadata")
    @classmethod
    def _limit_metadata(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None and len(value) > MAX_METADATA_KEYS:
            raise ValueError(f"metadata must have at most {MAX_METADATA_KEYS} keys")
        return value


class UserProfile(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    email: str
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")
    role: str = "user"
    is_active: bool = Field(default=True, alias="isActive")


class AuthResponse(BaseModel):
    success: bool = True
    user: UserProfile
    token: str
    message: str
