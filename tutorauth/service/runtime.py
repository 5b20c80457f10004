from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tutorauth.config import get_settings, reset_settings_cache
from tutorauth.logging import get_logger
from tutorauth.service.email import EmailService
from tutorauth.service.errors import ConfigurationError
from tutorauth.service.login import LoginOrchestrator
from tutorauth.service.otp import OtpManager
from tutorauth.service.passwords import CredentialVerifier
from tutorauth.service.rate_limit import RateLimiter
from tutorauth.service.tokens import TokenIssuer
from tutorauth.storage.common import CredentialStore
from tutorauth.storage.memory import MemoryStore
from tutorauth.storage.postgres import PostgresStore
from tutorauth.storage.redis_cache import MemoryCounterStore, RedisCache

logger = get_logger(__name__)

CounterStore = Union[RedisCache, MemoryCounterStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        self.store: Optional[CredentialStore] = None
        if self.settings.use_memory_store:
            self.store = MemoryStore()
        elif self.settings.database_url:
            try:
                self.store = PostgresStore(
                    self.settings.database_url,
                    timeout=self.settings.request_timeout_seconds,
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="postgres",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        else:
            # Requests that need the database fail with a configuration error
            logger.error("runtime_store_missing", setting="DATABASE_URL")

        self.cache: Optional[CounterStore] = self._init_counter_store()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.limiter = RateLimiter(self.cache, timeout=self.settings.request_timeout_seconds)
        self.verifier = CredentialVerifier()
        self.tokens = TokenIssuer(self.settings, self.store)
        self.login = LoginOrchestrator(
            self.settings, self.store, self.limiter, self.verifier, self.tokens
        )
        self.otp = OtpManager(self.store, self.email) if self.store is not None else None

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__ if self.store else None,
            counter_store=type(self.cache).__name__ if self.cache else None,
            email_configured=self.email.is_configured,
            jwt_configured=bool(self.settings.jwt_secret),
        )

    def _init_counter_store(self) -> Optional[CounterStore]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    password=self.settings.redis_token,
                    socket_timeout=self.settings.request_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if self.settings.test_mode or self.settings.allow_redis_fallback_dev:
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
                message=f"Running without Redis under {fallback_mode}; rate limit counters are in-memory only.",
            )
            return MemoryCounterStore()

        # The limiter fails open without a store; login keeps working unthrottled
        logger.error(
            "redis_unavailable_rate_limit_disabled",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
        )
        return None

    def require_store(self) -> CredentialStore:
        if self.store is None:
            raise ConfigurationError("DATABASE_URL is not configured")
        return self.store

    def require_otp(self) -> OtpManager:
        if self.otp is None:
            raise ConfigurationError("DATABASE_URL is not configured")
        return self.otp

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
