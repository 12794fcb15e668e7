from __future__ import annotations

import asyncio
import re
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set
from urllib.parse import quote

from refinergate.config import Deployment
from refinergate.logging import email_fingerprint, get_logger
from refinergate.service.credentials import (
    digest_token,
    hash_password,
    require_email,
    require_password,
)
from refinergate.service.email import MessageChannel, OutboundMessage, render_password_reset
from refinergate.service.errors import (
    InvalidTokenError,
    TokenExpiredError,
    ValidationError,
)
from refinergate.storage.errors import ConstraintViolation
from refinergate.storage.models import ResetToken
from refinergate.storage.provider import Store, StoreProvider

logger = get_logger(__name__)

TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"^[0-9a-f]{64}$")

REQUEST_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)
INVALID_TOKEN_MESSAGE = "Invalid or expired reset token"
EXPIRED_TOKEN_MESSAGE = "Reset token has expired. Please request a new one."
VALID_TOKEN_MESSAGE = "Token is valid"
RESET_DONE_MESSAGE = (
    "Password has been reset successfully. You can now sign in with your new password."
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PasswordResetService:
    """Issues, verifies and consumes single-use password reset tokens.

    Only the SHA-256 digest of a token is persisted. The raw value travels
    once, inside the link handed to the message channel.
    """

    def __init__(
        self,
        stores: StoreProvider,
        channel: MessageChannel,
        deployment: Deployment,
        *,
        base_url: str,
        ttl_minutes: int = 60,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.stores = stores
        self.channel = channel
        self.deployment = deployment
        self.base_url = base_url.rstrip("/")
        self.ttl_minutes = ttl_minutes
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    async def _dispatch(self, user_id: str, destination: str, message: OutboundMessage) -> None:
        try:
            delivered = await asyncio.to_thread(self.channel.send, destination, message)
        except Exception as exc:
            delivered = False
            logger.error("password_reset_dispatch_error", user_id=user_id, error=str(exc))
        if not delivered:
            logger.warning("password_reset_not_delivered", user_id=user_id)

    async def drain(self) -> None:
        """Wait for reset emails that are still being handed to the channel."""
        if self._pending:
            await asyncio.gather(*list(self._pending))

    def build_reset_url(self, token: str, email: str) -> str:
        return f"{self.base_url}/auth/reset-password?token={token}&email={quote(email, safe='')}"

    async def request_reset(self, email: Any) -> Dict[str, Any]:
        normalized = require_email(email)
        response: Dict[str, Any] = {"success": True, "message": REQUEST_MESSAGE}

        store = self.stores.acquire()
        user = store.get_user_by_email(normalized)
        if not user:
            logger.info("password_reset_unknown_account", account=email_fingerprint(normalized))
            return response

        token = secrets.token_hex(TOKEN_BYTES)
        store.create_reset_token(
            ResetToken.new(
                token_hash=digest_token(token),
                email=normalized,
                user_id=user.id,
                ttl_minutes=self.ttl_minutes,
                now=self._clock(),
            )
        )
        reset_url = self.build_reset_url(token, normalized)
        message = render_password_reset(reset_url, ttl_minutes=self.ttl_minutes)
        # Delivery is not awaited so known and unknown accounts answer alike
        task = asyncio.create_task(self._dispatch(user.id, normalized, message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        logger.info("password_reset_requested", user_id=user.id)

        if self.deployment.expose_reset_tokens:
            logger.info("password_reset_link", user_id=user.id, reset_url=reset_url)
            response["token"] = token
            response["resetUrl"] = reset_url
        return response

    def _validate_token_input(self, token: Any, email: Any) -> tuple[str, str]:
        if not isinstance(token, str) or not _TOKEN_RE.match(token):
            raise ValidationError("Invalid token format")
        return token, require_email(email)

    def _load_valid(self, store: Store, token_hash: str, email: str) -> ResetToken:
        record = store.find_active_reset_token(token_hash, email)
        if not record:
            raise InvalidTokenError(INVALID_TOKEN_MESSAGE)
        if record.is_expired(self._clock()):
            # Burn it so it can never be replayed
            store.mark_reset_token_used(record.id)
            logger.info("password_reset_token_expired", user_id=record.user_id)
            raise TokenExpiredError(EXPIRED_TOKEN_MESSAGE)
        return record

    async def verify_token(self, token: Any, email: Any) -> Dict[str, Any]:
        raw, normalized = self._validate_token_input(token, email)
        store = self.stores.acquire()
        self._load_valid(store, digest_token(raw), normalized)
        return {"success": True, "message": VALID_TOKEN_MESSAGE}

    async def consume_token(
        self, token: Any, email: Any, new_password: Optional[Any]
    ) -> Dict[str, Any]:
        raw, normalized = self._validate_token_input(token, email)
        password = require_password(new_password)
        token_hash = digest_token(raw)

        store = self.stores.acquire()
        self._load_valid(store, token_hash, normalized)
        password_hash, algo = hash_password(password)
        try:
            user_id = store.redeem_reset_token(
                token_hash, normalized, password_hash, algo, self._clock()
            )
        except ConstraintViolation as exc:
            logger.warning("password_reset_user_missing", detail=exc.detail)
            raise InvalidTokenError(INVALID_TOKEN_MESSAGE)
        if user_id is None:
            # Lost a race with another consumer, or expired in between
            logger.warning("password_reset_redeem_conflict", account=email_fingerprint(normalized))
            raise InvalidTokenError(INVALID_TOKEN_MESSAGE)
        logger.info("password_reset_completed", user_id=user_id)
        return {"success": True, "message": RESET_DONE_MESSAGE}
