from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from refinergate.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings read from the process environment and ``.env``."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Refinement backend (OTP relay)
    backend_url: str | None = env_field(None, "REFINER_BACKEND_URL")
    backend_api_key: str | None = env_field(None, "BACKEND_API_KEY")
    http_timeout_seconds: float = env_field(
        5.0,
        "HTTP_TIMEOUT_SECONDS",
        description="Upper bound for every outbound backend/provider call",
    )

    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_redirect_uri: str | None = env_field(None, "OAUTH_REDIRECT_URI")

    # Session credential
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("refinergate", "JWT_ISSUER")
    session_cookie_name: str = env_field("refiner_auth", "SESSION_COOKIE_NAME")
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")

    # Password reset
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")
    expose_reset_tokens: bool = env_field(
        False,
        "EXPOSE_RESET_TOKENS",
        description=(
            "Return raw reset links in API responses; honoured only when "
            "ENVIRONMENT is explicitly development or test"
        ),
    )
    reset_rate_limit_per_minute: int = env_field(5, "RESET_RATE_LIMIT_PER_MINUTE")
    otp_rate_limit_per_minute: int = env_field(5, "OTP_RATE_LIMIT_PER_MINUTE")

    # Billing
    stripe_secret_key: str | None = env_field(None, "STRIPE_SECRET_KEY")
    stripe_webhook_secret: str | None = env_field(None, "STRIPE_WEBHOOK_SECRET")
    stripe_webhook_tolerance_seconds: int = env_field(
        300, "STRIPE_WEBHOOK_TOLERANCE_SECONDS"
    )
    stripe_api_base: str = env_field("https://api.stripe.com", "STRIPE_API_BASE")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Refiner", "EMAIL_FROM_NAME")

    # Persistence
    database_url: str = env_field(
        "postgresql://localhost:5432/refinergate", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str | None = env_field(None, "REDIS_URL")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory fallbacks for tests",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("backend_url", "redis_url", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            return self
        if self.environment is Environment.PRODUCTION:
            raise ValueError("JWT_SECRET must be set in production")
        # Ephemeral secret: sessions do not survive a restart
        self.jwt_secret = secrets.token_urlsafe(64)
        logger.warning(
            "jwt_secret_generated",
            environment=self.environment.value,
            message="JWT_SECRET not set; using an ephemeral secret",
        )
        return self


@dataclass(frozen=True)
class Deployment:
    """Startup-time decisions derived once from ``Settings``.

    Services receive this object instead of consulting the environment per
    call, so tests can build one directly.
    """

    is_production: bool
    backend_configured: bool
    oauth_configured: bool
    webhook_configured: bool
    checkout_configured: bool
    email_configured: bool
    expose_reset_tokens: bool

    @classmethod
    def from_settings(cls, settings: Settings) -> "Deployment":
        is_production = settings.environment is Environment.PRODUCTION
        # An unset ENVIRONMENT falls back to development; that must not unlock exposure
        explicit_non_production = (
            "environment" in settings.model_fields_set
            and settings.environment in (Environment.DEVELOPMENT, Environment.TEST)
        )
        expose = settings.expose_reset_tokens and explicit_non_production
        if settings.expose_reset_tokens and not expose:
            logger.warning(
                "reset_token_exposure_ignored",
                environment=settings.environment.value,
                message="EXPOSE_RESET_TOKENS needs ENVIRONMENT=development or test",
            )
        return cls(
            is_production=is_production,
            backend_configured=bool(settings.backend_url),
            oauth_configured=bool(
                settings.google_client_id and settings.google_client_secret
            ),
            webhook_configured=bool(settings.stripe_webhook_secret),
            checkout_configured=bool(settings.stripe_secret_key),
            email_configured=bool(settings.smtp_host and settings.email_from_address),
            expose_reset_tokens=expose,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
