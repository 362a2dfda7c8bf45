"""Prometheus counters for authentication outcomes and throttling."""

from __future__ import annotations

from prometheus_client import Counter

AUTH_EVENTS = Counter(
    "identity_auth_events_total",
    "Security events recorded by the identity service",
    ["event", "success"],
)

RATE_LIMITED = Counter(
    "identity_rate_limited_total",
    "Requests rejected by the rate governor",
    ["scope"],
)
