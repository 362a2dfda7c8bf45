"""Identity provider introspection for federated (OAuth) session exchange."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from .domain.contracts import ExternalIdentity
from .errors import FederatedVerificationFailed

logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    def verify_external_token(self, token: str) -> ExternalIdentity: ...


class HttpIdentityProvider:
    """Validate provider-issued access tokens against a userinfo endpoint.

    Every failure mode (timeout, transport error, non-2xx, malformed body,
    missing subject or email, unverified email) raises
    ``FederatedVerificationFailed``; a token is never treated as valid by
    default.
    """

    def __init__(
        self,
        userinfo_url: str,
        *,
        api_key: str | None = None,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._userinfo_url = userinfo_url
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def verify_external_token(self, token: str) -> ExternalIdentity:
        if not token or not self._userinfo_url:
            raise FederatedVerificationFailed()
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
        try:
            response = self._client.get(self._userinfo_url, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("identity provider introspection timed out")
            raise FederatedVerificationFailed() from exc
        except httpx.HTTPError as exc:
            logger.warning("identity provider introspection failed: %s", exc.__class__.__name__)
            raise FederatedVerificationFailed() from exc

        if response.status_code != 200:
            logger.warning("identity provider rejected token status=%d", response.status_code)
            raise FederatedVerificationFailed()
        try:
            payload = response.json()
        except ValueError as exc:
            raise FederatedVerificationFailed() from exc
        if not isinstance(payload, dict):
            raise FederatedVerificationFailed()
        return parse_userinfo(payload)

    def close(self) -> None:
        self._client.close()


def parse_userinfo(payload: dict[str, Any]) -> ExternalIdentity:
    """Extract a stable identity from OIDC-style or ``user_metadata``-style userinfo."""
    metadata = payload.get("user_metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}
    subject = payload.get("sub") or payload.get("id")
    email = payload.get("email")
    if not subject or not isinstance(email, str) or "@" not in email:
        raise FederatedVerificationFailed()

    verified = payload.get("email_verified")
    if verified is None and "email_confirmed_at" in payload:
        verified = bool(payload.get("email_confirmed_at"))
    if verified is False:
        raise FederatedVerificationFailed("identity provider email is not verified")

    display_name = (
        metadata.get("full_name")
        or metadata.get("name")
        or payload.get("name")
    )
    avatar_url = metadata.get("avatar_url") or metadata.get("picture") or payload.get("picture")
    return ExternalIdentity(
        subject_id=str(subject),
        email=email.strip().lower(),
        display_name=display_name,
        avatar_url=avatar_url,
        email_verified=True,
    )


class DisabledIdentityProvider:
    """Used when no provider is configured; every exchange fails closed."""

    def verify_external_token(self, token: str) -> ExternalIdentity:
        raise FederatedVerificationFailed("federated sign-in is not configured")
