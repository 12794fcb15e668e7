from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from refinergate.logging import get_logger
from refinergate.storage.errors import ConstraintViolation
from refinergate.storage.models import AuditEntry, ResetToken, User

_USER_COLUMNS = {
    "first_name": "first_name",
    "last_name": "last_name",
    "google_id": "google_id",
    "avatar_url": "avatar_url",
    "role": "role",
    "is_active": "is_active",
    "last_login_at": "last_login_at",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        google_id TEXT UNIQUE,
        avatar_url TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        user_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_token_email_idx ON password_reset_token (email)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        user_id TEXT,
        action TEXT NOT NULL,
        details TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_action_details_idx ON audit_log (action, details)",
)


class PostgresStore:
    """Postgres-backed store for users, credentials, reset tokens and audit entries."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            google_id=row.get("google_id"),
            avatar_url=row.get("avatar_url"),
            role=row.get("role", "user"),
            is_active=row.get("is_active", True),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> ResetToken:
        return ResetToken(
            id=str(row["id"]),
            token_hash=row["token_hash"],
            email=row["email"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            used=bool(row.get("used", False)),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    # users
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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, google_id, avatar_url, role, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        first_name,
                        last_name,
                        google_id,
                        avatar_url,
                        role,
                        is_active,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE google_id = %s", (google_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{_USER_COLUMNS[name]} = %s" for name in fields)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    (*fields.values(), user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "google account already linked", {"field": "google_id"}
            )
        return self._user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                self._upsert_credential(conn, user_id, password_hash, password_algo)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    @staticmethod
    def _upsert_credential(conn, user_id: str, password_hash: str, password_algo: str) -> None:
        conn.execute(
            """
            INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (user_id) DO UPDATE
            SET password_hash = EXCLUDED.password_hash,
                password_algo = EXCLUDED.password_algo,
                last_updated_at = now()
            """,
            (user_id, password_hash, password_algo),
        )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # password reset tokens
    def create_reset_token(self, token: ResetToken) -> ResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (id, token_hash, email, user_id, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token_hash,
                        token.email,
                        token.user_id,
                        token.expires_at,
                        token.used,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("reset token collision", {"field": "token_hash"})
        return token

    def find_active_reset_token(self, token_hash: str, email: str) -> Optional[ResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM password_reset_token
                WHERE token_hash = %s AND email = %s AND used = false
                """,
                (token_hash, email),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def mark_reset_token_used(self, token_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE password_reset_token SET used = true WHERE id = %s AND used = false RETURNING id",
                (token_id,),
            ).fetchone()
        return row is not None

    def redeem_reset_token(
        self,
        token_hash: str,
        email: str,
        password_hash: str,
        password_algo: str,
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """Claim the token and store the new password in a single transaction.

        The conditional UPDATE row-locks the token, so a concurrent redeem waits
        and then matches nothing.
        """
        current = now or datetime.now(timezone.utc)
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    UPDATE password_reset_token SET used = true
                    WHERE token_hash = %s AND email = %s AND used = false AND expires_at > %s
                    RETURNING user_id
                    """,
                    (token_hash, email, current),
                ).fetchone()
                if not row:
                    return None
                user_id = str(row["user_id"])
                self._upsert_credential(conn, user_id, password_hash, password_algo)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"token_hash": token_hash[:8]}
            )
        return user_id

    # audit
    def record_audit(
        self, action: str, *, user_id: Optional[str] = None, details: Optional[str] = None
    ) -> AuditEntry:
        entry = AuditEntry(
            id=str(uuid.uuid4()), action=action, user_id=user_id, details=details
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO audit_log (id, user_id, action, details, created_at) VALUES (%s, %s, %s, %s, %s)",
                (entry.id, entry.user_id, entry.action, entry.details, entry.created_at),
            )
        return entry

    def has_audit_entry(self, action: str, details: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM audit_log WHERE action = %s AND details = %s LIMIT 1",
                (action, details),
            ).fetchone()
        return row is not None

    def list_audit_entries(self, user_id: Optional[str] = None) -> List[AuditEntry]:
        with self._connect() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE user_id = %s ORDER BY created_at",
                    (user_id,),
                ).fetchall()
        return [
            AuditEntry(
                id=str(row["id"]),
                action=row["action"],
                user_id=row.get("user_id"),
                details=row.get("details"),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
