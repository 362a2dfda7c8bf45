"""Redis-backed windowed rate limiter."""

from __future__ import annotations

import time
from typing import Final

from redis import Redis
from redis.exceptions import ResponseError

from .rate_limiter import RateDecision


class RedisFixedWindowRateLimiter:
    """Distributed per-key request counter implemented with ``INCR`` and key expiry.

    Redis expires each window key on its own, so ``sweep`` has nothing to do.
    """

    _LUA_SCRIPT: Final[str] = """
    local key = KEYS[1]
    local window_ms = tonumber(ARGV[1])
    local count = redis.call('INCR', key)
    if count == 1 then
        redis.call('PEXPIRE', key, window_ms)
    end
    local ttl = redis.call('PTTL', key)
    if ttl < 0 then
        redis.call('PEXPIRE', key, window_ms)
        ttl = window_ms
    end
    return {count, ttl}
    """

    def __init__(
        self,
        client: Redis,
        *,
        max_requests: int,
        window_seconds: int,
        key_prefix: str = "rate"
    ) -> None:
        """Initialise the Redis client, window configuration, and Lua script cache."""
        self._client = client
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._script = client.register_script(self._LUA_SCRIPT)

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    def hit(self, key: str) -> RateDecision:
        """Count one request for ``key`` against the shared window."""
        redis_key = f"{self._key_prefix}:{key}"
        try:
            count, ttl_ms = self._script(keys=[redis_key], args=[self._window_ms])
        except ResponseError as exc:
            message = str(exc).lower()
            if "unknown command" in message and "eval" in message:
                count, ttl_ms = self._hit_fallback(redis_key)
            else:
                raise
        count = int(count)
        allowed = count <= self._max_requests
        return RateDecision(
            allowed=allowed,
            count=count,
            retry_after_seconds=0.0 if allowed else max(int(ttl_ms), 0) / 1000.0,
            remaining=max(self._max_requests - count, 0),
        )

    def _hit_fallback(self, redis_key: str) -> tuple[int, int]:
        """Pipeline-based implementation used when Lua is unavailable."""
        pipe = self._client.pipeline()
        pipe.incr(redis_key)
        pipe.pexpire(redis_key, self._window_ms, nx=True)
        pipe.pttl(redis_key)
        count, _, ttl_ms = pipe.execute()
        return int(count), int(ttl_ms) if ttl_ms and ttl_ms > 0 else self._window_ms

    def sweep(self) -> int:
        return 0
