"""Domain-level request contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .account import DEFAULT_ACCOUNT_ROLE, Account, Tenant, TenantMembership


@dataclass(slots=True)
class RequestContext:
    """Audit context captured from the inbound request."""

    source_address: str | None = None
    user_agent: str | None = None


@dataclass(slots=True)
class RegisterInput:
    """Validated inputs required to register a password account."""

    email: str
    password: str
    display_name: str
    tenant_name: str | None = None


@dataclass(slots=True)
class ProfileUpdate:
    """Whitelisted profile fields; ``None`` leaves a field untouched."""

    display_name: str | None = None
    avatar_url: str | None = None

    def changes(self) -> dict[str, Any]:
        values = {"display_name": self.display_name, "avatar_url": self.avatar_url}
        return {key: value for key, value in values.items() if value is not None}


@dataclass(slots=True)
class NewAccount:
    email: str
    display_name: str
    role: str = DEFAULT_ACCOUNT_ROLE
    password_hash: str | None = None
    avatar_url: str | None = None
    external_subject: str | None = None


@dataclass(slots=True)
class NewTenant:
    name: str
    slug: str
    plan: str = "free"


@dataclass(slots=True)
class SecurityEventInput:
    event_type: str
    success: bool
    account_id: str | None = None
    email: str | None = None
    source_address: str | None = None
    user_agent: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class FailedLoginOutcome:
    """Result of an atomic failed-attempt increment."""

    attempts: int
    locked_until: datetime | None
    newly_locked: bool


@dataclass(slots=True)
class ExternalIdentity:
    """Identity asserted by the external identity provider."""

    subject_id: str
    email: str
    display_name: str | None = None
    avatar_url: str | None = None
    email_verified: bool = True


@dataclass(slots=True)
class SessionGrant:
    """A minted session token together with the identity it was issued for."""

    token: str
    expires_in: int
    account: Account
    tenant_id: str


@dataclass(slots=True)
class TwoFactorChallenge:
    """Returned instead of a token when a second factor is still required.

    ``challenge_token`` binds the second step to the password (or provider)
    step that produced it and expires after a few minutes.
    """

    email: str
    challenge_token: str


@dataclass(slots=True)
class RegistrationResult:
    account: Account
    session: SessionGrant
    membership: TenantMembership

    @property
    def tenant(self) -> Tenant:
        return self.membership.tenant
