from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

DEFAULT_ACCOUNT_ROLE = "developer"
MEMBERSHIP_ROLES = ("admin", "member", "viewer")


@dataclass(slots=True)
class Account:
    """Aggregate root for a platform identity.

    ``password_hash`` is ``None`` for federated-only accounts and
    ``two_factor_secret`` holds the sealed (encrypted) TOTP secret. Neither
    field ever leaves the service; API layers project through
    :class:`identity_service.api.routes.AccountResponse`.
    """

    account_id: str
    email: str
    display_name: str
    created_at: datetime
    updated_at: datetime
    role: str = DEFAULT_ACCOUNT_ROLE
    password_hash: str | None = None
    avatar_url: str | None = None
    external_subject: str | None = None
    two_factor_secret: str | None = None
    two_factor_enabled: bool = False
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_failed_login: datetime | None = None
    is_active: bool = True


@dataclass(slots=True)
class Tenant:
    """A company workspace; every authorization decision is scoped to one."""

    tenant_id: str
    name: str
    slug: str
    plan: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class Membership:
    account_id: str
    tenant_id: str
    role: str
    status: str
    joined_at: datetime


@dataclass(slots=True)
class TenantMembership:
    """A tenant joined with the caller's membership in it."""

    tenant: Tenant
    membership: Membership

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id

    @property
    def role(self) -> str:
        return self.membership.role

    @property
    def status(self) -> str:
        return self.membership.status

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(slots=True)
class SecurityEvent:
    """Append-only record of an authentication-related event."""

    event_id: int
    account_id: str | None
    email: str | None
    event_type: str
    source_address: str | None
    user_agent: str | None
    success: bool
    detail: dict
    created_at: datetime
