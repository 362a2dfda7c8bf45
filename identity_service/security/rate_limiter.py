"""In-memory windowed rate limiter implementation."""

from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable


@dataclass(slots=True, frozen=True)
class RateDecision:
    """Outcome of counting one request against a key's window."""

    allowed: bool
    count: int
    retry_after_seconds: float
    remaining: int


@dataclass(slots=True)
class _Window:
    count: int
    reset_at: float


class FixedWindowRateLimiter:
    """Thread-safe per-key request counter.

    The first request for a key opens a window of ``window_seconds``; requests
    inside the window increment the count and are rejected once it exceeds
    ``max_requests``. The first request after ``reset_at`` opens a new window.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise limiter parameters and per-key storage."""
        self._max_requests = max_requests
        self._window = window_seconds
        self._windows: dict[str, _Window] = {}
        self._lock = Lock()
        self._clock = clock

    @property
    def window_seconds(self) -> int:
        return self._window

    def hit(self, key: str) -> RateDecision:
        """Count one request for ``key`` and report whether it is admitted."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + self._window)
                self._windows[key] = window
            else:
                window.count += 1
            count = window.count
            reset_at = window.reset_at
        allowed = count <= self._max_requests
        return RateDecision(
            allowed=allowed,
            count=count,
            retry_after_seconds=0.0 if allowed else max(reset_at - now, 0.0),
            remaining=max(self._max_requests - count, 0),
        )

    def sweep(self) -> int:
        """Evict keys whose window expired more than one extra window ago."""
        cutoff = self._clock() - self._window
        with self._lock:
            stale = [key for key, window in self._windows.items() if window.reset_at < cutoff]
            for key in stale:
                del self._windows[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
