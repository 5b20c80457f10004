from __future__ import annotations

import math
import secrets
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# (count before this call, whether the attempt was stored, oldest score in window)
WindowSnapshot = Tuple[int, bool, Optional[float]]


def _window_ttl_seconds(window_ms: int) -> int:
    """Physical key lifetime: twice the window, never below one second."""

    return max(1, math.ceil(2 * window_ms / 1000))


def _member(now_ms: int) -> str:
    return f"{now_ms}-{secrets.token_hex(6)}"


class RedisCache:
    """Thin Redis wrapper holding sliding-window attempt counters.

    Each window is a sorted set whose scores are attempt timestamps in epoch
    milliseconds. Entries older than the window are pruned before counting.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.password = password
        if client is not None:
            self.client = client
        else:
            self.client = aioredis.from_url(
                redis_url,
                password=password,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the rate limiter."""

        # Short-lived sync client so the async one is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url, password=self.password, decode_responses=True
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _oldest_score(self, key: str) -> Optional[float]:
        oldest = await self.client.zrange(key, 0, 0, withscores=True)
        if not oldest:
            return None
        return float(oldest[0][1])

    async def window_check(
        self, key: str, max_attempts: int, window_ms: int, now_ms: int
    ) -> WindowSnapshot:
        """Prune, count and, when under the limit, record an attempt."""

        window_start = now_ms - window_ms
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(key, 0, window_start)
        pipe.zcard(key)
        results = await pipe.execute()
        current = int(results[1] or 0)

        allowed = current < max_attempts
        if allowed:
            pipe = self.client.pipeline()
            pipe.zadd(key, {_member(now_ms): now_ms})
            pipe.expire(key, _window_ttl_seconds(window_ms))
            await pipe.execute()
            return current, True, None
        return current, False, await self._oldest_score(key)

    async def window_record(self, key: str, window_ms: int, now_ms: int) -> None:
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(key, 0, now_ms - window_ms)
        pipe.zadd(key, {_member(now_ms): now_ms})
        pipe.expire(key, _window_ttl_seconds(window_ms))
        await pipe.execute()

    async def window_count(
        self, key: str, window_ms: int, now_ms: int
    ) -> Tuple[int, Optional[float]]:
        pipe = self.client.pipeline()
        pipe.zremrangebyscore(key, 0, now_ms - window_ms)
        pipe.zcard(key)
        results = await pipe.execute()
        current = int(results[1] or 0)
        oldest = await self._oldest_score(key) if current else None
        return current, oldest

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class MemoryCounterStore:
    """Process-local stand-in for :class:`RedisCache` in tests and dev fallback.

    Same sliding-window semantics; counters are lost on restart and are not
    shared between workers.
    """

    def __init__(self) -> None:
        self._windows: Dict[str, List[Tuple[float, str]]] = {}
        self._expires: Dict[str, float] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    def _entries(self, key: str, window_start: int) -> List[Tuple[float, str]]:
        expires_at = self._expires.get(key)
        if expires_at is not None and expires_at <= time.time():
            self._windows.pop(key, None)
            self._expires.pop(key, None)
        entries = [e for e in self._windows.get(key, []) if e[0] > window_start]
        if entries:
            self._windows[key] = entries
        else:
            self._windows.pop(key, None)
            self._expires.pop(key, None)
        return entries

    def _insert(self, key: str, window_ms: int, now_ms: int) -> None:
        self._windows.setdefault(key, []).append((float(now_ms), _member(now_ms)))
        self._expires[key] = time.time() + _window_ttl_seconds(window_ms)

    async def window_check(
        self, key: str, max_attempts: int, window_ms: int, now_ms: int
    ) -> WindowSnapshot:
        with self._lock:
            entries = self._entries(key, now_ms - window_ms)
            current = len(entries)
            if current < max_attempts:
                self._insert(key, window_ms, now_ms)
                return current, True, None
            return current, False, min(score for score, _ in entries)

    async def window_record(self, key: str, window_ms: int, now_ms: int) -> None:
        with self._lock:
            self._entries(key, now_ms - window_ms)
            self._insert(key, window_ms, now_ms)

    async def window_count(
        self, key: str, window_ms: int, now_ms: int
    ) -> Tuple[int, Optional[float]]:
        with self._lock:
            entries = self._entries(key, now_ms - window_ms)
            oldest = min((score for score, _ in entries), default=None)
            return len(entries), oldest

    async def close(self) -> None:
        with self._lock:
            self._windows.clear()
            self._expires.clear()
