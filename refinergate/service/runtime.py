from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse, urlunparse

from refinergate.config import Deployment, get_settings, reset_settings_cache
from refinergate.logging import get_logger
from refinergate.service.billing import BillingEventVerifier, CheckoutService
from refinergate.service.email import EmailService
from refinergate.service.oauth import GoogleOAuthService
from refinergate.service.otp import OtpResetProxy
from refinergate.service.reset import PasswordResetService
from refinergate.service.session import AccountService, SessionIssuer
from refinergate.storage.memory import MemoryStore
from refinergate.storage.postgres import PostgresStore
from refinergate.storage.errors import StoreUnavailable
from refinergate.storage.provider import StoreProvider
from refinergate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        self.deployment = Deployment.from_settings(self.settings)
        settings = self.settings
        logger.info(
            "runtime_init_started",
            environment=settings.environment.value,
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        if settings.use_memory_store:
            self.stores = StoreProvider(MemoryStore, kind="memory")
        else:
            self.stores = StoreProvider(
                lambda: PostgresStore(settings.database_url), kind="postgres"
            )

        self.cache: Optional[RedisCache] = None
        if settings.redis_url:
            try:
                cache = RedisCache(settings.redis_url, socket_timeout=settings.http_timeout_seconds)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(exc),
                    message="Running without Redis; rate limits are per-process only.",
                )

        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.sessions = SessionIssuer(settings, self.deployment)
        self.accounts = AccountService(self.stores, self.sessions)
        self.resets = PasswordResetService(
            self.stores,
            self.email,
            self.deployment,
            base_url=settings.app_base_url,
            ttl_minutes=settings.reset_token_ttl_minutes,
        )
        self.otp = OtpResetProxy(
            self.deployment,
            backend_url=settings.backend_url,
            api_key=settings.backend_api_key,
            timeout=settings.http_timeout_seconds,
        )
        self.oauth = GoogleOAuthService(
            self.stores,
            self.sessions,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.oauth_redirect_uri,
            timeout=settings.http_timeout_seconds,
        )
        self.billing = BillingEventVerifier(
            self.stores,
            webhook_secret=settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_webhook_tolerance_seconds,
        )
        self.checkout = CheckoutService(
            secret_key=settings.stripe_secret_key,
            base_url=settings.app_base_url,
            api_base=settings.stripe_api_base,
            timeout=settings.http_timeout_seconds,
        )
        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=self.stores.kind,
            redis_enabled=self.cache is not None,
            backend_configured=self.deployment.backend_configured,
            oauth_configured=self.deployment.oauth_configured,
            webhook_configured=self.deployment.webhook_configured,
            email_configured=self.deployment.email_configured,
            expose_reset_tokens=self.deployment.expose_reset_tokens,
        )

    def health(self) -> Dict[str, Any]:
        try:
            self.stores.acquire()
        except StoreUnavailable:
            pass
        checks = {"store": self.stores.health()}
        checks["redis"] = {"status": "healthy" if self.cache else "not_configured"}
        return checks

    async def close(self) -> None:
        await self.resets.drain()
        self.stores.close()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.stores.close()
            if runtime.cache is not None:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    cost: int = 1,
) -> Tuple[bool, int, int]:
    """Token-bucket rate limit: Redis when available, else per-process.

    Returns ``(allowed, remaining, reset_seconds)``.
    """
    if limit <= 0:
        return True, limit, 0
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    return allowed, remaining, reset_seconds
