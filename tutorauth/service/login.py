from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Optional

from tutorauth.config import Settings
from tutorauth.logging import get_logger
from tutorauth.service.background import BackgroundScheduler, run_blocking
from tutorauth.service.errors import (
    AuthenticationError,
    ConfigurationError,
    RateLimitedError,
    ServiceError,
    ValidationError,
)
from tutorauth.service.passwords import MAX_CREDENTIAL_LENGTH, CredentialVerifier
from tutorauth.service.rate_limit import FAILED_LOGIN, GENERAL, RateLimiter, RateLimitResult
from tutorauth.service.tokens import ACCESS_COOKIE, SESSION_COOKIE, TokenIssuer
from tutorauth.storage.common import CredentialStore
from tutorauth.storage.models import User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Incorrect email or password"
LOGIN_FAILED_MESSAGE = "Login failed. Please try again."


def lockout_message(
    retry_after_seconds: int, prefix: str = "Too many failed login attempts"
) -> str:
    if retry_after_seconds < 60:
        unit = "second" if retry_after_seconds == 1 else "seconds"
        wait = f"{retry_after_seconds} {unit}"
    else:
        minutes = math.ceil(retry_after_seconds / 60)
        wait = f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{prefix}. Please try again in {wait}."


def rate_limited(result: RateLimitResult, message: str) -> RateLimitedError:
    return RateLimitedError(
        message,
        result,
        detail={
            "retry_after": result.retry_after_seconds,
            "reset_time": result.reset_time,
            "remaining_attempts": result.remaining,
            "max_attempts": result.limit,
            "window_minutes": result.window_ms // 60000,
        },
    )


@dataclass
class LoginOutcome:
    user: User
    tokens: dict[str, str]
    rate_limit: Optional[RateLimitResult] = None

    def body(self, message: str = "Login successful") -> dict[str, Any]:
        """Response body; the admin token travels only as a cookie."""
        user = self.user
        return {
            "message": message,
            "user": {
                "id": user.id,
                "email": user.email,
                "username": user.username,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "level": user.level,
                "role": user.role,
            },
            "token": self.tokens[ACCESS_COOKIE],
            "session_token": self.tokens[SESSION_COOKIE],
        }


class LoginOrchestrator:
    """Composes throttling, verification and token issuance into a login."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[CredentialStore],
        limiter: RateLimiter,
        verifier: CredentialVerifier,
        tokens: TokenIssuer,
    ) -> None:
        self.settings = settings
        self.store = store
        self.limiter = limiter
        self.verifier = verifier
        self.tokens = tokens

    @property
    def timeout(self) -> float:
        return self.settings.request_timeout_seconds

    @property
    def failed_window_ms(self) -> int:
        return self.settings.login_failed_window_seconds * 1000

    def _require_store(self) -> CredentialStore:
        if self.store is None:
            raise ConfigurationError("DATABASE_URL is not configured")
        return self.store

    async def login(
        self,
        identifier: Optional[str],
        password: Optional[str],
        *,
        identity: Optional[str],
        scheduler: BackgroundScheduler,
    ) -> LoginOutcome:
        general = await self.limiter.check(
            GENERAL,
            identity,
            self.settings.general_rate_limit_max,
            self.settings.general_rate_limit_window_seconds * 1000,
        )

        gate = await self.limiter.count(
            FAILED_LOGIN,
            identity,
            self.settings.login_failed_max_attempts,
            self.failed_window_ms,
        )
        if not gate.allowed:
            logger.warning(
                "login_rate_limited",
                identity=identity,
                retry_after=gate.retry_after_seconds,
            )
            raise rate_limited(gate, lockout_message(gate.retry_after_seconds or 0))

        if not identifier or not password:
            raise ValidationError("Username/email and password are required")
        if len(identifier) > MAX_CREDENTIAL_LENGTH:
            raise ValidationError("Username/email is too long")
        if len(password) > MAX_CREDENTIAL_LENGTH:
            raise ValidationError("Password is too long")

        try:
            outcome = await self._authenticate(identifier, password, identity, scheduler)
        except (AuthenticationError, ValidationError):
            raise
        except Exception as exc:
            logger.error(
                "login_unexpected_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServiceError(
                LOGIN_FAILED_MESSAGE, status_code=500, error_code="server_error"
            ) from exc
        outcome.rate_limit = general
        return outcome

    async def _lookup(self, identifier: str) -> Optional[User]:
        store = self._require_store()
        if "@" in identifier:
            return await run_blocking(store.get_user_by_email, identifier, timeout=self.timeout)
        return await run_blocking(store.get_user_by_username, identifier, timeout=self.timeout)

    def _reject(
        self,
        reason: str,
        identity: Optional[str],
        scheduler: BackgroundScheduler,
        **context: Any,
    ) -> AuthenticationError:
        scheduler.schedule(
            "record_failed_login",
            self.limiter.record,
            FAILED_LOGIN,
            identity,
            self.failed_window_ms,
        )
        logger.warning("login_failed", reason=reason, identity=identity, **context)
        return AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

    async def _authenticate(
        self,
        identifier: str,
        password: str,
        identity: Optional[str],
        scheduler: BackgroundScheduler,
    ) -> LoginOutcome:
        user = await self._lookup(identifier)
        if user is None:
            raise self._reject("unknown_user", identity, scheduler)

        verified = await run_blocking(
            self.verifier.verify, password, user.password_hash, timeout=self.timeout
        )
        if not verified:
            raise self._reject("bad_password", identity, scheduler, user_id=user.id)

        if self.verifier.needs_rehash(user.password_hash):
            scheduler.schedule("rehash_password", self._rehash, user.id, password)
        return await self.complete_login(user, scheduler)

    def _rehash(self, user_id: str, password: str) -> None:
        self._require_store().set_password_hash(user_id, self.verifier.hash(password))
        logger.info("password_rehashed", user_id=user_id)

    async def complete_login(self, user: User, scheduler: BackgroundScheduler) -> LoginOutcome:
        """Issue tokens and persist the session; bookkeeping runs in the background.

        Shared by password login and the passwordless OTP flows.
        """

        store = self._require_store()
        tokens = self.tokens.issue_login_tokens(user)
        await run_blocking(
            self.tokens.create_session, user, tokens[SESSION_COOKIE], timeout=self.timeout
        )
        scheduler.schedule("rotate_sessions", self.tokens.rotate_sessions, user.id)
        scheduler.schedule("update_last_login", store.update_last_login, user.id, utcnow())
        logger.info(
            "login_succeeded",
            user_id=user.id,
            admin=user.is_admin,
        )
        return LoginOutcome(user=user, tokens=tokens)
