from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from refinergate.logging import get_logger
from refinergate.storage.errors import StoreUnavailable
from refinergate.storage.models import AuditEntry, ResetToken, User

logger = get_logger(__name__)


class Store(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_google_id(self, google_id: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_reset_token(self, token: ResetToken) -> ResetToken: ...

    def find_active_reset_token(
        self, token_hash: str, email: str
    ) -> Optional[ResetToken]: ...

    def mark_reset_token_used(self, token_id: str) -> bool: ...

    def redeem_reset_token(
        self,
        token_hash: str,
        email: str,
        password_hash: str,
        password_algo: str,
        now: Optional[datetime] = None,
    ) -> Optional[str]: ...

    def record_audit(
        self, action: str, *, user_id: Optional[str] = None, details: Optional[str] = None
    ) -> AuditEntry: ...

    def list_audit_entries(self, user_id: Optional[str] = None) -> List[AuditEntry]: ...

    def has_audit_entry(self, action: str, details: str) -> bool: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


class StoreProvider:
    """Process-wide store handle: initialised once, then reused.

    A failed initialisation is remembered. Every later ``acquire`` raises
    ``StoreUnavailable`` immediately instead of rebuilding a broken handle;
    ``reset`` clears the remembered failure.
    """

    def __init__(self, factory: Callable[[], Store], *, kind: str) -> None:
        self._factory = factory
        self.kind = kind
        self._store: Optional[Store] = None
        self._failure: Optional[BaseException] = None
        self._lock = threading.Lock()

    @property
    def failed(self) -> bool:
        return self._failure is not None

    def acquire(self) -> Store:
        store = self._store
        if store is not None:
            return store
        if self._failure is not None:
            raise StoreUnavailable(f"{self.kind} store unavailable")
        with self._lock:
            if self._store is not None:
                return self._store
            if self._failure is not None:
                raise StoreUnavailable(f"{self.kind} store unavailable")
            try:
                self._store = self._factory()
            except Exception as exc:
                self._failure = exc
                logger.error(
                    "store_init_failed",
                    store_type=self.kind,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise StoreUnavailable(f"{self.kind} store unavailable") from exc
            logger.info("store_initialized", store_type=self.kind)
            return self._store

    def health(self) -> Dict[str, Any]:
        if self._failure is not None:
            return {"status": "unavailable", "type": self.kind}
        if self._store is None:
            return {"status": "not_initialized", "type": self.kind}
        try:
            self._store.verify_connection()
        except Exception as exc:
            logger.error("store_health_check_failed", store_type=self.kind, error=str(exc))
            return {"status": "unhealthy", "type": self.kind}
        return {"status": "healthy", "type": self.kind}

    def close(self) -> None:
        with self._lock:
            store, self._store = self._store, None
        if store is not None:
            try:
                store.close()
            except Exception as exc:
                logger.warning("store_close_failed", store_type=self.kind, error=str(exc))

    def reset(self) -> None:
        self.close()
        with self._lock:
            self._failure = None
