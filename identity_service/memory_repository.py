"""Thread-safe in-process credential store.

Used for local development (``STORE_BACKEND=memory``) and by the test suite.
Every read returns a copy so callers never mutate stored state directly.
"""

from __future__ import annotations

import itertools
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from .domain.account import MEMBERSHIP_ROLES, Account, Membership, SecurityEvent, Tenant, TenantMembership
from .domain.contracts import FailedLoginOutcome, NewAccount, NewTenant, SecurityEventInput
from .errors import DuplicateEmail, SlugTaken
from .repository import UPDATABLE_ACCOUNT_FIELDS, EventCursor, normalize_email


@dataclass
class _RecoveryCode:
    code_hash: str
    used_at: datetime | None = None


@dataclass
class _PasswordReset:
    account_id: str
    expires_at: datetime
    used_at: datetime | None = None


class InMemoryAccountRepository:
    """Dictionary-backed implementation of :class:`~identity_service.repository.CredentialStore`."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[str, Account] = {}
        self._email_index: dict[str, str] = {}
        self._tenants: dict[str, Tenant] = {}
        self._memberships: dict[tuple[str, str], Membership] = {}
        self._recovery_codes: dict[str, list[_RecoveryCode]] = {}
        self._password_resets: dict[str, _PasswordReset] = {}
        self.security_events: list[SecurityEvent] = []
        self._event_seq = itertools.count(1)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    # accounts

    def find_account_by_email(self, email: str) -> Account | None:
        with self._lock:
            account_id = self._email_index.get(normalize_email(email))
            return self._copy(account_id)

    def find_account_by_id(self, account_id: str) -> Account | None:
        with self._lock:
            return self._copy(account_id)

    def find_account_by_external_subject(self, subject: str) -> Account | None:
        with self._lock:
            for account in self._accounts.values():
                if account.external_subject == subject:
                    return replace(account)
        return None

    def _copy(self, account_id: str | None) -> Account | None:
        if account_id is None or account_id not in self._accounts:
            return None
        return replace(self._accounts[account_id])

    def insert_account(self, payload: NewAccount) -> Account:
        email = normalize_email(payload.email)
        now = self._now()
        with self._lock:
            if email in self._email_index:
                raise DuplicateEmail()
            account = Account(
                account_id=str(uuid.uuid4()),
                email=email,
                display_name=payload.display_name,
                created_at=now,
                updated_at=now,
                role=payload.role,
                password_hash=payload.password_hash,
                avatar_url=payload.avatar_url,
                external_subject=payload.external_subject,
            )
            self._accounts[account.account_id] = account
            self._email_index[email] = account.account_id
            return replace(account)

    def update_account(self, account_id: str, **fields: Any) -> Account | None:
        unknown = set(fields) - UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            for name, value in fields.items():
                setattr(account, name, value)
            account.updated_at = self._now()
            return replace(account)

    # lockout bookkeeping

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> FailedLoginOutcome | None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return None
            account.failed_login_attempts += 1
            account.last_failed_login = now
            newly_locked = False
            lock_active = account.locked_until is not None and account.locked_until > now
            if account.failed_login_attempts >= threshold and not lock_active:
                account.locked_until = lock_until
                newly_locked = True
            return FailedLoginOutcome(
                attempts=account.failed_login_attempts,
                locked_until=account.locked_until,
                newly_locked=newly_locked,
            )

    def reset_failed_logins(self, account_id: str) -> None:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return
            account.failed_login_attempts = 0
            account.locked_until = None
            account.last_failed_login = None

    def release_expired_lock(self, account_id: str, now: datetime) -> bool:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None or account.locked_until is None or account.locked_until > now:
                return False
            account.failed_login_attempts = 0
            account.locked_until = None
            return True

    # tenants and memberships

    def insert_tenant(self, payload: NewTenant) -> Tenant:
        now = self._now()
        with self._lock:
            if any(tenant.slug == payload.slug for tenant in self._tenants.values()):
                raise SlugTaken(payload.slug)
            tenant = Tenant(
                tenant_id=str(uuid.uuid4()),
                name=payload.name,
                slug=payload.slug,
                plan=payload.plan,
                created_at=now,
                updated_at=now,
            )
            self._tenants[tenant.tenant_id] = tenant
            return replace(tenant)

    def find_tenant(self, tenant_id: str) -> Tenant | None:
        with self._lock:
            tenant = self._tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def insert_membership(
        self, account_id: str, tenant_id: str, role: str, status: str = "active"
    ) -> Membership:
        if role not in MEMBERSHIP_ROLES:
            raise ValueError(f"unknown membership role: {role}")
        with self._lock:
            key = (account_id, tenant_id)
            if key not in self._memberships:
                self._memberships[key] = Membership(
                    account_id=account_id,
                    tenant_id=tenant_id,
                    role=role,
                    status=status,
                    joined_at=self._now(),
                )
            return replace(self._memberships[key])

    def create_tenant_with_owner(self, payload: NewTenant, owner_account_id: str) -> TenantMembership:
        with self._lock:
            tenant = self.insert_tenant(payload)
            membership = self.insert_membership(owner_account_id, tenant.tenant_id, "admin", "active")
            return TenantMembership(tenant=tenant, membership=membership)

    def find_memberships(self, account_id: str) -> list[TenantMembership]:
        with self._lock:
            items = [
                TenantMembership(tenant=replace(self._tenants[tenant_id]), membership=replace(membership))
                for (owner, tenant_id), membership in self._memberships.items()
                if owner == account_id and tenant_id in self._tenants
            ]
        items.sort(key=lambda item: (item.membership.joined_at, item.tenant_id), reverse=True)
        return items

    def update_membership_status(self, account_id: str, tenant_id: str, status: str) -> Membership | None:
        with self._lock:
            membership = self._memberships.get((account_id, tenant_id))
            if membership is None:
                return None
            membership.status = status
            return replace(membership)

    # recovery codes

    def replace_recovery_codes(self, account_id: str, code_hashes: Sequence[str]) -> None:
        with self._lock:
            self._recovery_codes[account_id] = [_RecoveryCode(code_hash) for code_hash in code_hashes]

    def consume_recovery_code(self, account_id: str, code_hash: str, now: datetime) -> bool:
        with self._lock:
            for code in self._recovery_codes.get(account_id, []):
                if code.code_hash == code_hash and code.used_at is None:
                    code.used_at = now
                    return True
        return False

    def count_unused_recovery_codes(self, account_id: str) -> int:
        with self._lock:
            return sum(1 for code in self._recovery_codes.get(account_id, []) if code.used_at is None)

    # password resets

    def insert_password_reset(self, account_id: str, token_hash: str, expires_at: datetime) -> None:
        with self._lock:
            outstanding = [
                key
                for key, reset in self._password_resets.items()
                if reset.account_id == account_id and reset.used_at is None
            ]
            for key in outstanding:
                del self._password_resets[key]
            self._password_resets[token_hash] = _PasswordReset(account_id=account_id, expires_at=expires_at)

    def find_password_reset(self, token_hash: str, now: datetime) -> str | None:
        with self._lock:
            reset = self._password_resets.get(token_hash)
            if reset is None or reset.used_at is not None or reset.expires_at <= now:
                return None
            return reset.account_id

    def consume_password_reset(self, token_hash: str, now: datetime) -> str | None:
        with self._lock:
            account_id = self.find_password_reset(token_hash, now)
            if account_id is not None:
                self._password_resets[token_hash].used_at = now
            return account_id

    # security events

    def insert_security_event(self, payload: SecurityEventInput) -> None:
        with self._lock:
            self.security_events.append(
                SecurityEvent(
                    event_id=next(self._event_seq),
                    account_id=payload.account_id,
                    email=payload.email,
                    event_type=payload.event_type,
                    source_address=payload.source_address,
                    user_agent=payload.user_agent,
                    success=payload.success,
                    detail=dict(payload.detail or {}),
                    created_at=self._now(),
                )
            )

    def list_security_events(
        self, account_id: str, *, limit: int = 50, cursor: EventCursor | None = None
    ) -> tuple[list[SecurityEvent], Optional[EventCursor]]:
        limit = max(1, min(limit, 100))
        with self._lock:
            results = [event for event in self.security_events if event.account_id == account_id]
        results.sort(key=lambda event: (event.created_at, event.event_id), reverse=True)
        if cursor:
            results = [event for event in results if (event.created_at, event.event_id) < cursor]
        page = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = page[-1]
            next_cursor = (last.created_at, last.event_id)
        return page, next_cursor

    def events_of_type(self, event_type: str) -> list[SecurityEvent]:
        with self._lock:
            return [event for event in self.security_events if event.event_type == event_type]
