from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    google_id: Optional[str] = None
    avatar_url: Optional[str] = None
    role: str = "user"
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    def public_profile(self) -> Dict[str, object]:
        """Client-facing projection used in auth responses and OAuth fragments."""
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "avatarUrl": self.avatar_url,
            "role": self.role,
            "isActive": self.is_active,
        }


@dataclass
class ResetToken:
    """Hashed password-reset grant. The raw token is never stored."""

    id: str
    token_hash: str
    email: str
    user_id: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        *,
        token_hash: str,
        email: str,
        user_id: str,
        ttl_minutes: int = 60,
        now: Optional[datetime] = None,
    ) -> "ResetToken":
        issued = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            email=email,
            user_id=user_id,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            created_at=issued,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())


@dataclass
class AuditEntry:
    id: str
    action: str
    user_id: Optional[str] = None
    details: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
