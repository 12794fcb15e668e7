from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from refinergate.config import Deployment, Settings
from refinergate.logging import email_fingerprint, get_logger
from refinergate.service.credentials import (
    hash_password,
    normalize_email,
    require_password,
    require_signup_email,
    verify_password_hash,
)
from refinergate.service.errors import AuthenticationError, ConflictError, ValidationError
from refinergate.storage.errors import ConstraintViolation
from refinergate.storage.models import User
from refinergate.storage.provider import StoreProvider

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


class SessionIssuer:
    """Mints and reads the session credential carried in the session cookie.

    The credential is an HS256 JWT holding the user id and email. The server
    keeps no session state; it only issues and clears the cookie.
    """

    def __init__(self, settings: Settings, deployment: Deployment) -> None:
        self.secret = settings.jwt_secret or ""
        self.issuer = settings.jwt_issuer
        self.cookie_name = settings.session_cookie_name
        self.ttl = timedelta(days=settings.session_ttl_days)
        self.secure_cookie = deployment.is_production
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self.secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, user: User) -> str:
        now = int(time.time())
        payload = {
            "iss": self.issuer,
            "sub": user.id,
            "userId": user.id,
            "email": user.email,
            "iat": now,
            "exp": now + int(self.ttl.total_seconds()),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def read(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the claims of a valid credential, else None."""
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except Exception:
            logger.warning("session_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("session_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("session_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def cookie_settings(self) -> Dict[str, Any]:
        """Keyword arguments for ``Response.set_cookie``.

        Not httpOnly: client script reads it to sync in-page auth state.
        """
        return {
            "key": self.cookie_name,
            "path": "/",
            "expires": datetime.now(timezone.utc) + self.ttl,
            "samesite": "lax",
            "secure": self.secure_cookie,
            "httponly": False,
        }


class AccountService:
    """Email/password sign-up and sign-in."""

    def __init__(self, stores: StoreProvider, issuer: SessionIssuer) -> None:
        self.stores = stores
        self.issuer = issuer

    async def sign_up(
        self,
        email: Any,
        password: Any,
        first_name: Any,
        last_name: Any,
    ) -> Tuple[User, str]:
        if not all(isinstance(v, str) and v.strip() for v in (email, password, first_name, last_name)):
            raise ValidationError("All fields are required")
        normalized = require_signup_email(email)
        require_password(password, missing_message="Password is required")

        store = self.stores.acquire()
        if store.get_user_by_email(normalized):
            raise ConflictError("User with this email already exists")
        try:
            user = store.create_user(
                normalized,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
            )
        except ConstraintViolation:
            raise ConflictError("User with this email already exists")
        password_hash, algo = hash_password(password)
        store.save_password(user.id, password_hash, algo)
        logger.info("account_created", user_id=user.id)
        self._audit(store, "user.signup", user.id)
        return user, self.issuer.issue(user)

    async def sign_in(self, email: Any, password: Any) -> Tuple[User, str]:
        if not isinstance(email, str) or not email.strip() or not isinstance(password, str) or not password:
            raise ValidationError("Email and password are required")
        normalized = normalize_email(email)

        store = self.stores.acquire()
        user = store.get_user_by_email(normalized)
        if not user or not user.is_active:
            logger.info("sign_in_rejected", account=email_fingerprint(normalized))
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        if not verify_password_hash(store.get_password_record(user.id), password):
            logger.info("sign_in_rejected", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)
        user = store.update_user(user.id, last_login_at=datetime.now(timezone.utc)) or user
        self._audit(store, "user.signin", user.id)
        return user, self.issuer.issue(user)

    @staticmethod
    def _audit(store, action: str, user_id: str) -> None:
        try:
            store.record_audit(action, user_id=user_id)
        except Exception as exc:
            logger.warning("audit_write_failed", action=action, user_id=user_id, error=str(exc))
