from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from tutorauth.service.rate_limit import RateLimitResult


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def public_message(self) -> str:
        """Message safe to return to the client."""
        return self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); carries the limiter verdict for headers."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        result: "RateLimitResult",
        *,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.result = result


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"

    @property
    def public_message(self) -> str:
        return "internal server error"


class ConfigurationError(ServerError):
    """Required configuration (signing secret, database) is missing.

    The message names the missing setting for the logs; clients only ever
    see the generic server error.
    """


class DependencyError(ServerError):
    """A backing service (database, counter store, mail relay) failed."""


class OtpError(ServiceError):
    """One-time code verification failed.

    ``reason`` is one of ``not_found``, ``expired``, ``attempts_exhausted``
    or ``incorrect_code``. Only a wrong code is reported as 401; the other
    reasons require requesting a new code and are reported as 400.
    """

    def __init__(
        self,
        message: str,
        reason: str,
        *,
        attempts_remaining: Optional[int] = None,
    ) -> None:
        detail: dict = {"reason": reason}
        if attempts_remaining is not None:
            detail["attempts_remaining"] = attempts_remaining
        if reason == "incorrect_code":
            super().__init__(
                message, status_code=401, error_code="unauthorized", detail=detail
            )
        else:
            super().__init__(message, detail=detail)
        self.reason = reason
        self.attempts_remaining = attempts_remaining


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
    "DependencyError",
    "OtpError",
]
