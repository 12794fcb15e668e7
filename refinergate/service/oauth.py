from __future__ import annotations

import hmac
import json
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote, urlencode

import httpx

from refinergate.logging import get_logger
from refinergate.service.credentials import normalize_email
from refinergate.service.errors import NotConfiguredError
from refinergate.service.session import SessionIssuer
from refinergate.storage.errors import ConstraintViolation
from refinergate.storage.models import User
from refinergate.storage.provider import StoreProvider

logger = get_logger(__name__)

GOOGLE_PROVIDER = {
    "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",
    "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    "scope": "openid email profile",
}

STATE_COOKIE = "oauth_state"
STATE_TTL_SECONDS = 600

MAX_STATE_LENGTH = 256
MAX_CODE_LENGTH = 2048
MAX_PROVIDER_ERROR_LENGTH = 256
GOOGLE_SIGNIN_ACTION = "user.google_signin"

# Provider error codes are echoed only when they look like a plain OAuth code
_PROVIDER_ERROR_CODE = re.compile(r"^[a-z_]{1,64}$")


class OAuthOutcome(str, Enum):
    SUCCESS = "success"
    PROVIDER_ERROR = "provider_error"
    CSRF_MISMATCH = "csrf_mismatch"
    MISSING_CODE = "missing_code"
    NOT_CONFIGURED = "not_configured"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    PROFILE_FETCH_FAILED = "profile_fetch_failed"
    IDENTITY_UPSERT_FAILED = "identity_upsert_failed"


FAILURE_MESSAGES: Dict[OAuthOutcome, str] = {
    OAuthOutcome.PROVIDER_ERROR: "Google OAuth failed.",
    OAuthOutcome.CSRF_MISMATCH: "Invalid OAuth state. Please try again.",
    OAuthOutcome.MISSING_CODE: "No authorization code received.",
    OAuthOutcome.NOT_CONFIGURED: "Google OAuth is not configured.",
    OAuthOutcome.TOKEN_EXCHANGE_FAILED: "Failed to exchange authorization code.",
    OAuthOutcome.PROFILE_FETCH_FAILED: "Failed to fetch user information.",
    OAuthOutcome.IDENTITY_UPSERT_FAILED: "An error occurred during authentication.",
}


@dataclass
class OAuthResult:
    outcome: OAuthOutcome
    user: Optional[User] = None
    token: Optional[str] = None
    provider_error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is OAuthOutcome.SUCCESS

    @property
    def message(self) -> Optional[str]:
        if self.succeeded:
            return None
        if (
            self.outcome is OAuthOutcome.PROVIDER_ERROR
            and self.provider_error
            and _PROVIDER_ERROR_CODE.match(self.provider_error)
        ):
            return f"Google OAuth failed: {self.provider_error}"
        return FAILURE_MESSAGES[self.outcome]


def redirect_target(result: OAuthResult, base_url: str) -> str:
    """Map a terminal outcome to the browser redirect.

    Credentials ride in the URL fragment so they never reach server logs.
    """
    base = base_url.rstrip("/")
    if result.succeeded and result.user is not None and result.token:
        profile = {
            key: value
            for key, value in result.user.public_profile().items()
            if key in {"id", "email", "firstName", "lastName", "avatarUrl"}
        }
        return (
            f"{base}/auth/google/success"
            f"#token={quote(result.token, safe='')}"
            f"&user={quote(json.dumps(profile, separators=(',', ':')), safe='')}"
        )
    message = result.message or FAILURE_MESSAGES[OAuthOutcome.IDENTITY_UPSERT_FAILED]
    return f"{base}/?error={quote(message, safe='')}&login=1"


def split_display_name(name: Any) -> Tuple[str, str]:
    if not isinstance(name, str):
        return "", ""
    parts = name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class GoogleOAuthService:
    """Authorization-code flow against Google, ending in a session credential."""

    def __init__(
        self,
        stores: StoreProvider,
        issuer: SessionIssuer,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.stores = stores
        self.issuer = issuer
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def begin(
        self, state: Optional[str] = None, redirect_uri: Optional[str] = None
    ) -> Tuple[str, str]:
        """Return ``(authorization_url, state)``."""
        if not self.client_id:
            logger.warning("oauth_not_configured", provider="google")
            raise NotConfiguredError(FAILURE_MESSAGES[OAuthOutcome.NOT_CONFIGURED])
        callback_uri = redirect_uri or self.redirect_uri
        if not callback_uri:
            logger.error("oauth_no_redirect_uri_configured", provider="google")
            raise NotConfiguredError(FAILURE_MESSAGES[OAuthOutcome.NOT_CONFIGURED])
        state = state or secrets.token_urlsafe(32)
        params = {
            "client_id": self.client_id,
            "redirect_uri": callback_uri,
            "response_type": "code",
            "scope": GOOGLE_PROVIDER["scope"],
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{GOOGLE_PROVIDER['auth_url']}?{urlencode(params)}", state

    async def complete(
        self,
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
        stored_state: Optional[str],
        redirect_uri: Optional[str] = None,
    ) -> OAuthResult:
        if error:
            if len(error) > MAX_PROVIDER_ERROR_LENGTH:
                logger.warning("oauth_provider_error_oversized", provider="google", length=len(error))
                return OAuthResult(OAuthOutcome.PROVIDER_ERROR)
            logger.warning("oauth_provider_error", provider="google", error=error[:100])
            return OAuthResult(OAuthOutcome.PROVIDER_ERROR, provider_error=error)
        if state and len(state) > MAX_STATE_LENGTH:
            logger.warning("oauth_state_oversized", provider="google", length=len(state))
            return OAuthResult(OAuthOutcome.CSRF_MISMATCH)
        if not state or not stored_state or not hmac.compare_digest(
            state.encode("utf-8"), stored_state.encode("utf-8")
        ):
            logger.warning("oauth_state_mismatch", provider="google", has_cookie=bool(stored_state))
            return OAuthResult(OAuthOutcome.CSRF_MISMATCH)
        if not code:
            return OAuthResult(OAuthOutcome.MISSING_CODE)
        if len(code) > MAX_CODE_LENGTH:
            logger.warning("oauth_code_oversized", provider="google", length=len(code))
            return OAuthResult(OAuthOutcome.MISSING_CODE)
        if not self.is_configured:
            logger.error("oauth_credentials_missing", provider="google")
            return OAuthResult(OAuthOutcome.NOT_CONFIGURED)

        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport, follow_redirects=False
        ) as client:
            access_token = await self._exchange_code(
                client, code, redirect_uri or self.redirect_uri
            )
            if not access_token:
                return OAuthResult(OAuthOutcome.TOKEN_EXCHANGE_FAILED)
            profile = await self._fetch_profile(client, access_token)
            if profile is None:
                return OAuthResult(OAuthOutcome.PROFILE_FETCH_FAILED)

        try:
            user = self._upsert_user(profile)
        except Exception as exc:
            logger.error(
                "oauth_identity_upsert_failed",
                provider="google",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return OAuthResult(OAuthOutcome.IDENTITY_UPSERT_FAILED)

        self._audit_sign_in(user)
        logger.info("oauth_sign_in_complete", provider="google", user_id=user.id)
        return OAuthResult(OAuthOutcome.SUCCESS, user=user, token=self.issuer.issue(user))

    async def _exchange_code(
        self, client: httpx.AsyncClient, code: str, redirect_uri: Optional[str]
    ) -> Optional[str]:
        try:
            response = await client.post(
                GOOGLE_PROVIDER["token_url"],
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": redirect_uri or "",
                    "grant_type": "authorization_code",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.error("oauth_token_exchange_error", provider="google", error=str(exc))
            return None
        if not response.is_success:
            logger.error(
                "oauth_token_exchange_rejected",
                provider="google",
                status_code=response.status_code,
                body=response.text[:500],
            )
            return None
        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("oauth_token_parse_error", provider="google", error=str(exc))
            return None
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            logger.error("oauth_no_access_token", provider="google")
            return None
        return access_token

    async def _fetch_profile(
        self, client: httpx.AsyncClient, access_token: str
    ) -> Optional[Dict[str, Any]]:
        try:
            response = await client.get(
                GOOGLE_PROVIDER["userinfo_url"],
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.error("oauth_userinfo_error", provider="google", error=str(exc))
            return None
        if not response.is_success:
            logger.error(
                "oauth_userinfo_rejected",
                provider="google",
                status_code=response.status_code,
                body=response.text[:500],
            )
            return None
        try:
            profile = response.json()
        except ValueError as exc:
            logger.error("oauth_userinfo_parse_error", provider="google", error=str(exc))
            return None
        if not isinstance(profile, dict):
            logger.error("oauth_userinfo_invalid_format", provider="google")
            return None
        return profile

    def _audit_sign_in(self, user: User) -> None:
        try:
            self.stores.acquire().record_audit(GOOGLE_SIGNIN_ACTION, user_id=user.id)
        except Exception as exc:
            logger.warning(
                "audit_write_failed", action=GOOGLE_SIGNIN_ACTION, user_id=user.id, error=str(exc)
            )

    def _upsert_user(self, profile: Dict[str, Any]) -> User:
        """Find by Google id, then by email, else create. Safe to repeat."""
        google_id = str(profile.get("id") or "").strip()
        email = profile.get("email")
        if not google_id or not isinstance(email, str) or "@" not in email:
            raise ValueError("provider profile lacks id or email")
        normalized = normalize_email(email)
        first_name, last_name = split_display_name(profile.get("name"))
        avatar_url = profile.get("picture") or None

        store = self.stores.acquire()
        user = store.get_user_by_google_id(google_id) or store.get_user_by_email(normalized)
        if user is None:
            try:
                user = store.create_user(
                    normalized,
                    first_name=first_name,
                    last_name=last_name,
                    google_id=google_id,
                    avatar_url=avatar_url,
                )
                logger.info("oauth_user_created", provider="google", user_id=user.id)
            except ConstraintViolation:
                # Concurrent sign-in for the same identity created it first
                user = store.get_user_by_google_id(google_id) or store.get_user_by_email(
                    normalized
                )
                if user is None:
                    raise

        updates: Dict[str, Any] = {"last_login_at": datetime.now(timezone.utc)}
        if user.google_id != google_id:
            updates["google_id"] = google_id
        if avatar_url and user.avatar_url != avatar_url:
            updates["avatar_url"] = avatar_url
        if first_name and user.first_name != first_name:
            updates["first_name"] = first_name
        if last_name and user.last_name != last_name:
            updates["last_name"] = last_name
        return store.update_user(user.id, **updates) or user
