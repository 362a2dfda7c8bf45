"""Request-rate governance for public and authenticated traffic."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from ..config import Settings
from ..errors import RateLimited
from ..metrics import RATE_LIMITED
from .rate_limiter import FixedWindowRateLimiter, RateDecision

logger = logging.getLogger(__name__)


class CounterStore(Protocol):
    """Windowed counter backend shared by all request handlers."""

    def hit(self, key: str) -> RateDecision: ...

    def sweep(self) -> int: ...


class RateGovernor:
    """Admission checks backed by three independent windowed counters.

    ``public`` is keyed by source address for unauthenticated traffic,
    ``subject`` by the session's subject id, and ``registration`` applies a
    stricter per-address ceiling to account creation only.
    """

    def __init__(self, *, public: CounterStore, subject: CounterStore, registration: CounterStore) -> None:
        self._limiters = {"public": public, "subject": subject, "registration": registration}
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None

    @classmethod
    def in_memory(cls, settings: Settings) -> "RateGovernor":
        return cls(
            public=FixedWindowRateLimiter(
                settings.rate_limit_public_requests, settings.rate_limit_public_window_seconds
            ),
            subject=FixedWindowRateLimiter(
                settings.rate_limit_subject_requests, settings.rate_limit_subject_window_seconds
            ),
            registration=FixedWindowRateLimiter(
                settings.rate_limit_register_requests, settings.rate_limit_register_window_seconds
            ),
        )

    def admit_address(self, source_address: str) -> RateDecision:
        return self._admit("public", f"addr:{source_address}")

    def admit_subject(self, subject_id: str) -> RateDecision:
        return self._admit("subject", f"sub:{subject_id}")

    def admit_registration(self, source_address: str) -> RateDecision:
        return self._admit("registration", f"register:{source_address}")

    def _admit(self, scope: str, key: str) -> RateDecision:
        decision = self._limiters[scope].hit(key)
        if not decision.allowed:
            RATE_LIMITED.labels(scope=scope).inc()
            logger.warning("rate limit exceeded scope=%s key=%s count=%d", scope, key, decision.count)
            raise RateLimited(decision.retry_after_seconds)
        return decision

    def sweep(self) -> int:
        """Evict expired windows from every counter; returns the number removed."""
        return sum(limiter.sweep() for limiter in self._limiters.values())

    def start_sweeper(self, interval_seconds: float) -> None:
        """Run :meth:`sweep` every ``interval_seconds`` on a daemon thread."""
        if self._sweeper is not None:
            return
        self._stop.clear()

        def _loop() -> None:
            while not self._stop.wait(interval_seconds):
                try:
                    removed = self.sweep()
                except Exception:
                    logger.exception("rate limit sweep failed")
                    continue
                if removed:
                    logger.debug("rate limit sweep evicted %d keys", removed)

        self._sweeper = threading.Thread(target=_loop, name="rate-limit-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._stop.set()
        self._sweeper.join(timeout=5)
        self._sweeper = None


def build_rate_governor(settings: Settings) -> RateGovernor:
    """Instantiate the configured counter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            from .redis_rate_limiter import RedisFixedWindowRateLimiter

            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("rate governor configured for redis backend")
            return RateGovernor(
                public=RedisFixedWindowRateLimiter(
                    client,
                    max_requests=settings.rate_limit_public_requests,
                    window_seconds=settings.rate_limit_public_window_seconds,
                    key_prefix="rate:public",
                ),
                subject=RedisFixedWindowRateLimiter(
                    client,
                    max_requests=settings.rate_limit_subject_requests,
                    window_seconds=settings.rate_limit_subject_window_seconds,
                    key_prefix="rate:subject",
                ),
                registration=RedisFixedWindowRateLimiter(
                    client,
                    max_requests=settings.rate_limit_register_requests,
                    window_seconds=settings.rate_limit_register_window_seconds,
                    key_prefix="rate:register",
                ),
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate governor unavailable, falling back to in-memory: %s", exc)

    logger.info("rate governor using in-memory backend")
    return RateGovernor.in_memory(settings)
