"""Utilities for issuing and validating session JWTs and opaque reset tokens."""

from __future__ import annotations

import hashlib
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import jwt

from ..config import Settings
from ..errors import TokenExpired, TokenInvalid

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "role", "tenant_id", "iat", "exp")
_SESSION_TYPE = "session"
_CHALLENGE_TYPE = "2fa_challenge"
CHALLENGE_TTL_SECONDS = 300


@dataclass(slots=True, frozen=True)
class SessionClaims:
    """Verified contents of a session token."""

    subject_id: str
    role: str
    tenant_id: str
    issued_at: int
    expires_at: int
    token_id: str | None = None


class TokenSigner:
    """Issue and verify stateless, tenant-scoped session tokens.

    The signing key is process-wide configuration. Expiry is checked against
    the injected ``clock`` (seconds since the epoch) with ``leeway_seconds``
    of tolerance, so verification needs no round-trip to the store.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        ttl_seconds: int,
        leeway_seconds: int = 5,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret
        self._issuer = issuer
        self._ttl = ttl_seconds
        self._leeway = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenSigner":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            ttl_seconds=settings.jwt_ttl_seconds,
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    @property
    def default_ttl(self) -> int:
        return self._ttl

    def issue(self, subject_id: str, role: str, tenant_id: str, ttl: int | None = None) -> str:
        """Create a signed JWT for ``subject_id`` scoped to ``tenant_id``.

        Parameters
        ----------
        subject_id:
            Account identifier embedded in the ``sub`` claim.
        role:
            Platform role of the account.
        tenant_id:
            Active tenant the session is authorised for.
        ttl:
            Lifetime in seconds; defaults to the configured session TTL.
        """
        lifetime = self._ttl if ttl is None else ttl
        if lifetime <= 0:
            raise ValueError("token ttl must be positive")
        now = int(self._clock())
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "sub": subject_id,
            "role": role,
            "tenant_id": tenant_id,
            "iat": now,
            "exp": now + lifetime,
            "jti": uuid.uuid4().hex,
            "typ": _SESSION_TYPE,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify(self, token: str) -> SessionClaims:
        """Decode and verify a session token.

        Raises
        ------
        TokenExpired
            When the clock has passed ``exp`` plus the leeway.
        TokenInvalid
            For a bad signature, foreign issuer, malformed token, or missing claims.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"verify_exp": False, "verify_iat": False, "require": list(_REQUIRED_CLAIMS)},
            )
        except jwt.PyJWTError as exc:
            raise TokenInvalid() from exc

        try:
            issued_at = int(payload["iat"])
            expires_at = int(payload["exp"])
        except (TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        if payload.get("typ", _SESSION_TYPE) != _SESSION_TYPE:
            raise TokenInvalid()
        if not all(isinstance(payload[claim], str) and payload[claim] for claim in ("sub", "role", "tenant_id")):
            raise TokenInvalid()
        if self._clock() > expires_at + self._leeway:
            raise TokenExpired()

        return SessionClaims(
            subject_id=payload["sub"],
            role=payload["role"],
            tenant_id=payload["tenant_id"],
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=payload.get("jti"),
        )

    def issue_challenge(self, subject_id: str, ttl: int = CHALLENGE_TTL_SECONDS) -> str:
        """Create a short-lived token proving the password step succeeded.

        Challenge tokens carry no tenant or role and are rejected by :meth:`verify`.
        """
        now = int(self._clock())
        payload = {
            "iss": self._issuer,
            "sub": subject_id,
            "typ": _CHALLENGE_TYPE,
            "iat": now,
            "exp": now + ttl,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def verify_challenge(self, token: str) -> str:
        """Return the subject id of a valid, unexpired challenge token."""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                issuer=self._issuer,
                options={"verify_exp": False, "verify_iat": False, "require": ["sub", "typ", "exp"]},
            )
        except jwt.PyJWTError as exc:
            raise TokenInvalid() from exc
        if payload["typ"] != _CHALLENGE_TYPE or not isinstance(payload["sub"], str):
            raise TokenInvalid()
        try:
            expires_at = int(payload["exp"])
        except (TypeError, ValueError) as exc:
            raise TokenInvalid() from exc
        if self._clock() > expires_at + self._leeway:
            raise TokenExpired()
        return payload["sub"]


def generate_reset_token() -> str:
    """Return a random, URL-safe single-use token for password-reset links."""
    return secrets.token_urlsafe(32)


def hash_reset_token(token: str) -> str:
    """SHA-256 digest stored in place of a reset token."""
    return hashlib.sha256(token.strip().encode("utf-8")).hexdigest()
