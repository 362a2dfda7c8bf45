"""Error taxonomy for identity, session, and tenant operations.

Every :class:`IdentityError` is operational: it is surfaced to the caller with
a stable machine-readable ``kind`` plus a human message. Anything else that
escapes a service call (store outages, :class:`HashFormatError`) is treated as
an internal error by the HTTP layer.
"""

from __future__ import annotations

import math
from typing import Any


class IdentityError(Exception):
    """Base class for operational errors mapped to HTTP responses."""

    kind: str = "identity_error"
    status_code: int = 400
    default_message: str = "request failed"

    def __init__(self, message: str | None = None, *, detail: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail or {}
        super().__init__(self.message)


class RetryableIdentityError(IdentityError):
    """Errors that carry a retry hint in seconds."""

    def __init__(self, retry_after_seconds: float, message: str | None = None) -> None:
        self.retry_after_seconds = max(1, math.ceil(retry_after_seconds))
        super().__init__(message, detail={"retry_after_seconds": self.retry_after_seconds})


class DuplicateEmail(IdentityError):
    kind = "duplicate_email"
    status_code = 409
    default_message = "an account with this email already exists"


class WeakPassword(IdentityError):
    kind = "weak_password"
    status_code = 422
    default_message = "password does not meet the password policy"

    def __init__(self, failures: list[str]) -> None:
        self.failures = list(failures)
        super().__init__(detail={"failed_rules": self.failures})


class InvalidCredentials(IdentityError):
    kind = "invalid_credentials"
    status_code = 401
    default_message = "invalid email or password"


class AccountLocked(RetryableIdentityError):
    kind = "account_locked"
    status_code = 423
    default_message = "account temporarily locked after repeated failed attempts"


class TwoFactorRequired(IdentityError):
    kind = "two_factor_required"
    status_code = 401
    default_message = "a second authentication factor is required"


class InvalidTwoFactorCode(IdentityError):
    kind = "invalid_two_factor_code"
    status_code = 401
    default_message = "invalid two-factor code"


class TwoFactorNotConfigured(IdentityError):
    kind = "two_factor_not_configured"
    status_code = 400
    default_message = "two-factor authentication has not been set up"


class TwoFactorAlreadyEnabled(IdentityError):
    kind = "two_factor_already_enabled"
    status_code = 409
    default_message = "two-factor authentication is already enabled; disable it first"


class NotAMember(IdentityError):
    kind = "not_a_member"
    status_code = 403
    default_message = "account is not an active member of this company"


class AlreadyMember(IdentityError):
    kind = "already_member"
    status_code = 409
    default_message = "account already belongs to or is invited to this company"


class InsufficientRole(IdentityError):
    kind = "insufficient_role"
    status_code = 403
    default_message = "only company admins can do this"


class InvalidResetToken(IdentityError):
    kind = "invalid_reset_token"
    status_code = 400
    default_message = "password reset link is invalid or has expired"


class FederatedVerificationFailed(IdentityError):
    kind = "federated_verification_failed"
    status_code = 401
    default_message = "could not verify the identity provider token"


class TokenInvalid(IdentityError):
    kind = "token_invalid"
    status_code = 401
    default_message = "invalid session token"


class TokenExpired(IdentityError):
    kind = "token_expired"
    status_code = 401
    default_message = "session token expired"


class RateLimited(RetryableIdentityError):
    kind = "rate_limited"
    status_code = 429
    default_message = "too many requests, please try again later"


class AccountNotFound(IdentityError):
    kind = "account_not_found"
    status_code = 404
    default_message = "account not found"


class HashFormatError(ValueError):
    """Raised when a stored password digest is not a recognised hash.

    This indicates data corruption or a programming error and is never
    reported to callers as an authentication failure.
    """


class StoreError(RuntimeError):
    """Wraps failures raised by the persistence backend."""


class SlugTaken(StoreError):
    """A tenant slug collided with an existing tenant."""
