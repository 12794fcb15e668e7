from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from refinergate.logging import get_logger
from refinergate.storage.errors import ConstraintViolation
from refinergate.storage.models import AuditEntry, ResetToken, User

_UPDATABLE_USER_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "google_id",
        "avatar_url",
        "role",
        "is_active",
        "last_login_at",
    }
)


class MemoryStore:
    """In-memory backing store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.reset_tokens: Dict[str, ResetToken] = {}
        self.audit_log: List[AuditEntry] = []
        # RLock for all data operations; nested acquisition within one thread is allowed
        self._data_lock = threading.RLock()

    # user / auth
    def create_user(
        self,
        email: str,
        *,
        first_name: str = "",
        last_name: str = "",
        google_id: Optional[str] = None,
        avatar_url: Optional[str] = None,
        role: str = "user",
        is_active: bool = True,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if google_id and any(
                existing.google_id == google_id for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
                )
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                google_id=google_id,
                avatar_url=avatar_url,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.google_id == google_id), None
            )

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_google_id = fields.get("google_id")
            if new_google_id and any(
                other.google_id == new_google_id and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation(
                    "google account already linked", {"field": "google_id"}
                )
            for name, value in fields.items():
                setattr(user, name, value)
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # password reset tokens
    def create_reset_token(self, token: ResetToken) -> ResetToken:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.reset_tokens.values()):
                raise ConstraintViolation("reset token collision", {"field": "token_hash"})
            self.reset_tokens[token.id] = token
            return token

    def find_active_reset_token(self, token_hash: str, email: str) -> Optional[ResetToken]:
        with self._data_lock:
            return next(
                (
                    t
                    for t in self.reset_tokens.values()
                    if t.token_hash == token_hash and t.email == email and not t.used
                ),
                None,
            )

    def mark_reset_token_used(self, token_id: str) -> bool:
        with self._data_lock:
            token = self.reset_tokens.get(token_id)
            if not token or token.used:
                return False
            token.used = True
            return True

    def redeem_reset_token(
        self,
        token_hash: str,
        email: str,
        password_hash: str,
        password_algo: str,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Set the password and burn the token in one step.

        Returns the owning user id, or None when no unused, unexpired token
        matches. Raises ConstraintViolation (token left unused) if the owning
        user no longer exists.
        """
        current = now or datetime.now(timezone.utc)
        with self._data_lock:
            token = self.find_active_reset_token(token_hash, email)
            if not token or token.expires_at <= current:
                return None
            self.save_password(token.user_id, password_hash, password_algo)
            token.used = True
            return token.user_id

    # audit
    def record_audit(
        self, action: str, *, user_id: Optional[str] = None, details: Optional[str] = None
    ) -> AuditEntry:
        entry = AuditEntry(
            id=str(uuid.uuid4()), action=action, user_id=user_id, details=details
        )
        with self._data_lock:
            self.audit_log.append(entry)
        return entry

    def list_audit_entries(self, user_id: Optional[str] = None) -> List[AuditEntry]:
        with self._data_lock:
            return [e for e in self.audit_log if user_id is None or e.user_id == user_id]

    def has_audit_entry(self, action: str, details: str) -> bool:
        with self._data_lock:
            return any(e.action == action and e.details == details for e in self.audit_log)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
