from __future__ import annotations

import hashlib
import re
from typing import Any, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from refinergate.service.errors import ValidationError

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
PASSWORD_ALGO = "argon2id"

EMAIL_REQUIRED_MESSAGE = "Valid email address is required"

# Stricter shape used when creating accounts
_SIGNUP_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_pwd_hasher = PasswordHasher(type=Type.ID)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def require_email(email: Any, message: str = EMAIL_REQUIRED_MESSAGE) -> str:
    """Return the normalized address or raise ``ValidationError``.

    The reset and OTP flows only require a non-empty string containing ``@``.
    """
    if not isinstance(email, str) or not email.strip() or "@" not in email:
        raise ValidationError(message)
    return normalize_email(email)


def require_signup_email(email: Any) -> str:
    normalized = require_email(email, "Invalid email format")
    if not _SIGNUP_EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email format")
    return normalized


def require_password(password: Any, *, missing_message: str = "New password is required") -> str:
    if not isinstance(password, str) or not password:
        raise ValidationError(missing_message)
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at most {MAX_PASSWORD_LENGTH} characters long"
        )
    return password


def hash_password(password: str) -> Tuple[str, str]:
    return _pwd_hasher.hash(password), PASSWORD_ALGO


def verify_password_hash(record: Optional[Tuple[str, str]], password: str) -> bool:
    """Check ``password`` against a stored ``(hash, algo)`` record."""
    if not record:
        return False
    stored_hash, algo = record
    if algo != PASSWORD_ALGO or not stored_hash:
        return False
    try:
        return _pwd_hasher.verify(stored_hash, password)
    except (InvalidHash, VerifyMismatchError):
        return False


def digest_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()
