"""Sliding-window rate limiting over the ephemeral counter store.

Windows are keyed ``rate_limit:{namespace}:{identity}``. The limiter fails
open: a missing store, a storage error or a timeout all yield an allowed
verdict so an outage of the counter store never locks users out.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from tutorauth.logging import get_logger

logger = get_logger(__name__)

GENERAL = "general"
FAILED_LOGIN = "failed-login"
SEND_OTP = "send-otp"


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int  # epoch milliseconds
    limit: int
    window_ms: int
    retry_after_seconds: Optional[int] = None

    @property
    def reset_time(self) -> str:
        return (
            datetime.fromtimestamp(self.reset_at / 1000, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z")
        )

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* headers, plus Retry-After when the caller is blocked."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": self.reset_time,
        }
        if not self.allowed and self.retry_after_seconds is not None:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


def _now_ms() -> int:
    return int(time.time() * 1000)


def window_key(namespace: str, identity: str) -> str:
    return f"rate_limit:{namespace}:{identity}"


def resolve_client_identity(
    headers: Mapping[str, str], client_host: Optional[str]
) -> Optional[str]:
    """Pick the client address used as the rate-limit identity.

    Proxy headers win over the transport peer; the first hop of
    ``X-Forwarded-For`` is the original client.
    """

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = (headers.get(header) or "").strip()
        if value:
            return value
    return client_host or None


class RateLimiter:
    def __init__(self, store: Any, *, timeout: float = 5.0) -> None:
        self.store = store
        self.timeout = timeout

    def _open(self, max_attempts: int, window_ms: int, now_ms: int) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=max_attempts,
            reset_at=now_ms + window_ms,
            limit=max_attempts,
            window_ms=window_ms,
        )

    @staticmethod
    def _verdict(
        current: int,
        inserted: bool,
        oldest: Optional[float],
        max_attempts: int,
        window_ms: int,
        now_ms: int,
    ) -> RateLimitResult:
        allowed = current < max_attempts
        remaining = max(0, max_attempts - current - (1 if inserted else 0))
        if allowed:
            return RateLimitResult(
                allowed=True,
                remaining=remaining,
                reset_at=now_ms + window_ms,
                limit=max_attempts,
                window_ms=window_ms,
            )
        reset_at = int(oldest + window_ms) if oldest is not None else now_ms + window_ms
        return RateLimitResult(
            allowed=False,
            remaining=remaining,
            reset_at=reset_at,
            limit=max_attempts,
            window_ms=window_ms,
            retry_after_seconds=max(1, math.ceil((reset_at - now_ms) / 1000)),
        )

    async def check(
        self, namespace: str, identity: Optional[str], max_attempts: int, window_ms: int
    ) -> RateLimitResult:
        """Count the attempt and report whether it is within the limit."""

        now_ms = _now_ms()
        if self.store is None or not identity:
            return self._open(max_attempts, window_ms, now_ms)
        try:
            current, inserted, oldest = await asyncio.wait_for(
                self.store.window_check(
                    window_key(namespace, identity), max_attempts, window_ms, now_ms
                ),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning(
                "rate_limit_store_error",
                operation="check",
                namespace=namespace,
                error=str(exc) or type(exc).__name__,
            )
            return self._open(max_attempts, window_ms, now_ms)
        return self._verdict(current, inserted, oldest, max_attempts, window_ms, now_ms)

    async def record(self, namespace: str, identity: Optional[str], window_ms: int) -> None:
        """Append an attempt without gating on the limit."""

        if self.store is None or not identity:
            return
        try:
            await asyncio.wait_for(
                self.store.window_record(
                    window_key(namespace, identity), window_ms, _now_ms()
                ),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning(
                "rate_limit_store_error",
                operation="record",
                namespace=namespace,
                error=str(exc) or type(exc).__name__,
            )

    async def count(
        self, namespace: str, identity: Optional[str], max_attempts: int, window_ms: int
    ) -> RateLimitResult:
        """Read-only gate: report the window state without adding an attempt."""

        now_ms = _now_ms()
        if self.store is None or not identity:
            return self._open(max_attempts, window_ms, now_ms)
        try:
            current, oldest = await asyncio.wait_for(
                self.store.window_count(window_key(namespace, identity), window_ms, now_ms),
                timeout=self.timeout,
            )
        except Exception as exc:
            logger.warning(
                "rate_limit_store_error",
                operation="count",
                namespace=namespace,
                error=str(exc) or type(exc).__name__,
            )
            return self._open(max_attempts, window_ms, now_ms)
        return self._verdict(current, False, oldest, max_attempts, window_ms, now_ms)
