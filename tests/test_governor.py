"""Tests for the rate governor admission checks."""

from __future__ import annotations

import pytest

from identity_service.config import Settings
from identity_service.errors import RateLimited
from identity_service.security.governor import RateGovernor, build_rate_governor

from .conftest import make_governor


def test_registration_ceiling_is_stricter_than_public():
    governor = make_governor(public=100, registration=3)
    for _ in range(3):
        governor.admit_registration("10.0.0.1")
    with pytest.raises(RateLimited) as excinfo:
        governor.admit_registration("10.0.0.1")
    assert excinfo.value.retry_after_seconds >= 1
    governor.admit_address("10.0.0.1")


def test_subject_and_address_windows_are_independent():
    governor = make_governor(public=1, subject=1)
    governor.admit_address("shared")
    governor.admit_subject("shared")
    with pytest.raises(RateLimited):
        governor.admit_address("shared")
    with pytest.raises(RateLimited):
        governor.admit_subject("shared")


def test_rate_limited_error_carries_retry_hint():
    governor = make_governor(subject=1)
    governor.admit_subject("account-1")
    with pytest.raises(RateLimited) as excinfo:
        governor.admit_subject("account-1")
    assert excinfo.value.detail == {"retry_after_seconds": excinfo.value.retry_after_seconds}
    assert 1 <= excinfo.value.retry_after_seconds <= 60


def test_sweeper_thread_starts_and_stops():
    governor = make_governor()
    governor.start_sweeper(0.01)
    governor.stop_sweeper()
    assert governor.sweep() == 0


def test_build_rate_governor_falls_back_to_memory():
    governor = build_rate_governor(Settings(rate_limit_backend="redis", redis_url="redis://127.0.0.1:1/0"))
    assert isinstance(governor, RateGovernor)
    governor.admit_address("127.0.0.1")
