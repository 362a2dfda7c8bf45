"""Tests for identity provider introspection."""

from __future__ import annotations

import httpx
import pytest

from identity_service.errors import FederatedVerificationFailed
from identity_service.federation import DisabledIdentityProvider, HttpIdentityProvider, parse_userinfo

USERINFO_URL = "https://idp.example.com/auth/v1/user"


def provider_for(handler) -> HttpIdentityProvider:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpIdentityProvider(USERINFO_URL, api_key="anon-key", client=client)


def test_valid_token_yields_identity():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["authorization"] = request.headers["authorization"]
        seen["apikey"] = request.headers["apikey"]
        return httpx.Response(
            200,
            json={
                "id": "user-42",
                "email": "Frank@Example.com",
                "email_confirmed_at": "2024-01-01T00:00:00Z",
                "user_metadata": {"full_name": "Frank", "avatar_url": "https://img/frank.png"},
            },
        )

    identity = provider_for(handler).verify_external_token("provider-token")
    assert seen == {"authorization": "Bearer provider-token", "apikey": "anon-key"}
    assert identity.subject_id == "user-42"
    assert identity.email == "frank@example.com"
    assert identity.display_name == "Frank"
    assert identity.avatar_url == "https://img/frank.png"


@pytest.mark.parametrize("status_code", [401, 403, 500])
def test_non_success_status_fails_closed(status_code):
    provider = provider_for(lambda request: httpx.Response(status_code, json={"error": "nope"}))
    with pytest.raises(FederatedVerificationFailed):
        provider.verify_external_token("provider-token")


def test_timeout_fails_closed():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow provider", request=request)

    with pytest.raises(FederatedVerificationFailed):
        provider_for(handler).verify_external_token("provider-token")


def test_malformed_body_fails_closed():
    provider = provider_for(lambda request: httpx.Response(200, content=b"<html>"))
    with pytest.raises(FederatedVerificationFailed):
        provider.verify_external_token("provider-token")


def test_empty_token_is_rejected_without_a_call():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("provider must not be called")

    with pytest.raises(FederatedVerificationFailed):
        provider_for(handler).verify_external_token("")


@pytest.mark.parametrize(
    "payload",
    [
        {"email": "no-subject@example.com"},
        {"sub": "abc"},
        {"sub": "abc", "email": "not-an-email"},
        {"sub": "abc", "email": "a@example.com", "email_verified": False},
        {"sub": "abc", "email": "a@example.com", "email_confirmed_at": None},
    ],
)
def test_incomplete_or_unverified_identity_is_rejected(payload):
    with pytest.raises(FederatedVerificationFailed):
        parse_userinfo(payload)


def test_oidc_style_payload_is_accepted():
    identity = parse_userinfo({"sub": "oidc|1", "email": "g@example.com", "email_verified": True, "name": "G"})
    assert (identity.subject_id, identity.display_name) == ("oidc|1", "G")


def test_disabled_provider_always_fails():
    with pytest.raises(FederatedVerificationFailed):
        DisabledIdentityProvider().verify_external_token("anything")
