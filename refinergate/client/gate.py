from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from refinergate.logging import get_logger

logger = get_logger(__name__)

USER_KEY = "refiner-user"
AUTH_STATE_KEY = "refiner-auth-state"

RESTORE_DELAY_SECONDS = 0.8
FAIL_FAST_DELAY_SECONDS = 0.2
LOGIN_PATH = "/?login=1"


class CredentialCache(Protocol):
    """Key/value storage that survives a page reload (browser local storage)."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class InMemoryCredentialCache:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def remove(self, key: str) -> None:
        self._values.pop(key, None)


def has_persisted_credentials(cache: CredentialCache) -> bool:
    try:
        return bool(cache.get(USER_KEY) and cache.get(AUTH_STATE_KEY))
    except Exception as exc:
        # Storage can be blocked entirely (private browsing, quotas)
        logger.warning("credential_cache_unreadable", error=str(exc))
        return False


class AuthState:
    """Live authentication signal plus the initialization barrier.

    ``is_initialized`` flips once ``restore`` has looked at the persisted
    blob, whatever it found. Until then no access decision may be made.
    """

    def __init__(self, cache: CredentialCache) -> None:
        self.cache = cache
        self.is_authenticated = False
        self.is_initialized = False
        self.token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None

    def restore(self) -> bool:
        try:
            raw_state = self.cache.get(AUTH_STATE_KEY)
            raw_user = self.cache.get(USER_KEY)
            state = json.loads(raw_state) if raw_state else None
            user = json.loads(raw_user) if raw_user else None
        except (ValueError, TypeError) as exc:
            logger.warning("credential_cache_corrupt", error=str(exc))
            state, user = None, None
        token = state.get("token") if isinstance(state, dict) else None
        if isinstance(token, str) and token and isinstance(user, dict):
            self.token = token
            self.user = user
            self.is_authenticated = True
        self.is_initialized = True
        return self.is_authenticated

    def sign_in(self, token: str, user: Dict[str, Any]) -> None:
        self.token = token
        self.user = user
        self.is_authenticated = True
        self.is_initialized = True
        self.cache.set(AUTH_STATE_KEY, json.dumps({"token": token, "isAuthenticated": True}))
        self.cache.set(USER_KEY, json.dumps(user))

    def sign_out(self) -> None:
        self.token = None
        self.user = None
        self.is_authenticated = False
        self.cache.remove(AUTH_STATE_KEY)
        self.cache.remove(USER_KEY)


class GateView(str, Enum):
    LOADING = "loading"
    HIDDEN = "hidden"
    PROTECTED = "protected"
    REDIRECTING = "redirecting"


class SessionGate:
    """Decides whether protected content may render.

    An unauthenticated but initialized state waits a debounce before sending
    the user to the login entry point: longer when a persisted blob suggests
    restoration is still in flight, shorter when there is nothing to
    restore. The live signal is re-checked after the wait, and a gate
    navigates at most once.
    """

    def __init__(
        self,
        state: AuthState,
        navigate: Callable[[str], None],
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        restore_delay: float = RESTORE_DELAY_SECONDS,
        fail_fast_delay: float = FAIL_FAST_DELAY_SECONDS,
        login_path: str = LOGIN_PATH,
    ) -> None:
        self.state = state
        self.navigate = navigate
        self._sleep = sleep
        self.restore_delay = restore_delay
        self.fail_fast_delay = fail_fast_delay
        self.login_path = login_path
        self.has_redirected = False

    @property
    def view(self) -> GateView:
        """What to render right now, without making any decision."""
        if not self.state.is_initialized:
            return GateView.LOADING
        if self.state.is_authenticated:
            return GateView.PROTECTED
        if self.has_redirected:
            return GateView.REDIRECTING
        return GateView.HIDDEN

    def debounce_delay(self) -> float:
        if has_persisted_credentials(self.state.cache):
            return self.restore_delay
        return self.fail_fast_delay

    async def evaluate(self) -> GateView:
        current = self.view
        if current is not GateView.HIDDEN:
            return current

        await self._sleep(self.debounce_delay())

        # Restoration may have completed while we waited
        if self.state.is_authenticated:
            return GateView.PROTECTED
        if not self.has_redirected:
            self.has_redirected = True
            logger.info("session_gate_redirect", target=self.login_path)
            self.navigate(self.login_path)
        return GateView.REDIRECTING
