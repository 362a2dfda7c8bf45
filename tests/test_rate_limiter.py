"""Tests for the in-memory and Redis-backed windowed rate limiters."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import fakeredis
import pytest

from identity_service.security.rate_limiter import FixedWindowRateLimiter
from identity_service.security.redis_rate_limiter import RedisFixedWindowRateLimiter


class Ticker:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def ticker() -> Ticker:
    return Ticker()


def test_requests_within_ceiling_are_admitted(ticker):
    limiter = FixedWindowRateLimiter(max_requests=3, window_seconds=60, clock=ticker)
    decisions = [limiter.hit("addr:1") for _ in range(3)]
    assert all(decision.allowed for decision in decisions)
    assert [decision.remaining for decision in decisions] == [2, 1, 0]


def test_request_over_ceiling_is_rejected_with_retry_hint(ticker):
    limiter = FixedWindowRateLimiter(max_requests=2, window_seconds=60, clock=ticker)
    limiter.hit("addr:1")
    ticker.now += 15
    limiter.hit("addr:1")
    decision = limiter.hit("addr:1")
    assert not decision.allowed
    assert decision.count == 3
    assert decision.retry_after_seconds == pytest.approx(45)


def test_first_request_after_window_resets_count(ticker):
    limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=60, clock=ticker)
    assert limiter.hit("sub:a").allowed
    assert not limiter.hit("sub:a").allowed
    ticker.now += 60
    assert not limiter.hit("sub:a").allowed
    ticker.now += 1
    decision = limiter.hit("sub:a")
    assert decision.allowed
    assert decision.count == 1


def test_keys_are_independent(ticker):
    limiter = FixedWindowRateLimiter(max_requests=1, window_seconds=60, clock=ticker)
    assert limiter.hit("addr:1").allowed
    assert limiter.hit("addr:2").allowed
    assert not limiter.hit("addr:1").allowed


def test_sweep_evicts_only_long_expired_windows(ticker):
    limiter = FixedWindowRateLimiter(max_requests=5, window_seconds=60, clock=ticker)
    limiter.hit("old")
    ticker.now += 100
    limiter.hit("fresh")
    assert limiter.sweep() == 0
    ticker.now += 30
    assert limiter.sweep() == 1
    assert len(limiter) == 1


def test_concurrent_hits_are_counted_exactly(ticker):
    limiter = FixedWindowRateLimiter(max_requests=50, window_seconds=60, clock=ticker)
    with ThreadPoolExecutor(max_workers=8) as pool:
        decisions = list(pool.map(lambda _: limiter.hit("addr:burst"), range(80)))
    assert sum(decision.allowed for decision in decisions) == 50
    assert max(decision.count for decision in decisions) == 80


@pytest.fixture()
def redis_client() -> fakeredis.FakeStrictRedis:
    client = fakeredis.FakeStrictRedis()
    client.flushall()
    return client


def test_redis_limiter_allows_within_threshold(redis_client):
    limiter = RedisFixedWindowRateLimiter(redis_client, max_requests=3, window_seconds=60, key_prefix="test")
    assert limiter.hit("addr:1").allowed
    assert limiter.hit("addr:1").allowed
    assert limiter.hit("addr:1").allowed


def test_redis_limiter_blocks_excess_with_retry_hint(redis_client):
    limiter = RedisFixedWindowRateLimiter(redis_client, max_requests=2, window_seconds=60, key_prefix="test")
    limiter.hit("addr:1")
    limiter.hit("addr:1")
    decision = limiter.hit("addr:1")
    assert not decision.allowed
    assert 0 < decision.retry_after_seconds <= 60


def test_redis_limiter_window_expires(redis_client):
    limiter = RedisFixedWindowRateLimiter(redis_client, max_requests=1, window_seconds=60, key_prefix="test")
    assert limiter.hit("addr:1").allowed
    assert not limiter.hit("addr:1").allowed
    redis_client.delete("test:addr:1")
    assert limiter.hit("addr:1").allowed


def test_redis_limiter_sets_expiry_on_window_key(redis_client):
    limiter = RedisFixedWindowRateLimiter(redis_client, max_requests=5, window_seconds=60, key_prefix="test")
    limiter.hit("sub:a")
    assert 0 < redis_client.pttl("test:sub:a") <= 60_000
    assert limiter.sweep() == 0
