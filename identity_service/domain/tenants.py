"""Tenant (company) membership resolution, creation, invitations, and switching."""

from __future__ import annotations

import logging
import re
import secrets
import threading
import zlib

from ..errors import AccountNotFound, AlreadyMember, InsufficientRole, NotAMember, SlugTaken, StoreError
from ..repository import CredentialStore
from ..security.tokens import TokenSigner
from .account import MEMBERSHIP_ROLES, Account, Membership, TenantMembership
from .contracts import NewTenant, SessionGrant

logger = logging.getLogger(__name__)

_SLUG_ATTEMPTS = 3
_LOCK_STRIPES = 64
_MAX_TENANT_NAME = 100


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:48].rstrip("-") or "workspace"


def default_tenant_name(account: Account, name_hint: str | None = None) -> str:
    """Name for an implicitly created tenant: the hint, else "<name>'s Workspace"."""
    if name_hint and name_hint.strip():
        return name_hint.strip()[:_MAX_TENANT_NAME]
    owner = (account.display_name or "").strip() or account.email.split("@", 1)[0]
    return f"{owner}'s Workspace"[:_MAX_TENANT_NAME]


class TenantService:
    """Tenant membership workflows and tenant-scoped session issuance.

    ``ensure_default_tenant`` is the only place tenants are created implicitly;
    every session-minting path calls it so that an authenticated account always
    has at least one active membership.
    """

    def __init__(self, store: CredentialStore, signer: TokenSigner) -> None:
        self._store = store
        self._signer = signer
        # Striped locks serialise default-tenant creation per account.
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

    def _lock_for(self, account_id: str) -> threading.Lock:
        return self._locks[zlib.crc32(account_id.encode("utf-8")) % _LOCK_STRIPES]

    def list_memberships(self, account_id: str) -> list[TenantMembership]:
        """Active memberships of the account, most recently joined first."""
        return [item for item in self._store.find_memberships(account_id) if item.is_active]

    def verify_membership(self, account_id: str, tenant_id: str) -> bool:
        return self._active_membership(account_id, tenant_id) is not None

    def create_tenant(self, name: str, owner_account_id: str) -> TenantMembership:
        """Create a tenant and make ``owner_account_id`` its active admin."""
        return self._create_with_owner(name.strip()[:_MAX_TENANT_NAME], owner_account_id)

    def _create_with_owner(self, name: str, owner_account_id: str) -> TenantMembership:
        base = slugify(name)
        slug = base
        for attempt in range(1, _SLUG_ATTEMPTS + 1):
            try:
                created = self._store.create_tenant_with_owner(NewTenant(name=name, slug=slug), owner_account_id)
            except SlugTaken:
                logger.info("tenant slug %s taken (attempt %d), retrying", slug, attempt)
                slug = f"{base}-{secrets.token_hex(3)}"
                continue
            logger.info("created tenant %s for account %s", created.tenant_id, owner_account_id)
            return created
        raise StoreError("could not allocate a unique tenant slug")

    def ensure_default_tenant(self, account: Account, name_hint: str | None = None) -> TenantMembership:
        """Return the account's current active membership, creating a default tenant if it has none."""
        memberships = self.list_memberships(account.account_id)
        if memberships:
            return memberships[0]
        with self._lock_for(account.account_id):
            memberships = self.list_memberships(account.account_id)
            if memberships:
                return memberships[0]
            logger.info("account %s has no active tenant; creating a default one", account.account_id)
            return self._create_with_owner(default_tenant_name(account, name_hint), account.account_id)

    def resolve_active_tenant(self, account: Account, name_hint: str | None = None) -> str:
        """Tenant id a fresh session is scoped to: the most recently joined active membership."""
        return self.ensure_default_tenant(account, name_hint).tenant_id

    def issue_session(self, account: Account, tenant_id: str) -> SessionGrant:
        token = self._signer.issue(account.account_id, account.role, tenant_id)
        return SessionGrant(
            token=token,
            expires_in=self._signer.default_ttl,
            account=account,
            tenant_id=tenant_id,
        )

    def switch_active_tenant(self, account_id: str, tenant_id: str) -> SessionGrant:
        """Re-issue a session token scoped to ``tenant_id``.

        Raises
        ------
        NotAMember
            When the account has no active membership in the tenant.
        """
        if not self.verify_membership(account_id, tenant_id):
            logger.warning("tenant switch denied for account %s", account_id)
            raise NotAMember()
        account = self._store.find_account_by_id(account_id)
        if account is None or not account.is_active:
            raise NotAMember()
        return self.issue_session(account, tenant_id)

    def invite_member(self, inviter_account_id: str, tenant_id: str, email: str, role: str = "member") -> Membership:
        """Add an existing account to the tenant as a *pending* member.

        Raises
        ------
        InsufficientRole
            When the inviter is not an active admin of the tenant.
        AccountNotFound
            When no active account has ``email``.
        AlreadyMember
            When the account already has a membership (active or pending).
        """
        if role not in MEMBERSHIP_ROLES:
            raise ValueError(f"unknown membership role: {role}")
        inviter = self._active_membership(inviter_account_id, tenant_id)
        if inviter is None or inviter.role != "admin":
            logger.warning("invite to tenant %s denied for account %s", tenant_id, inviter_account_id)
            raise InsufficientRole()
        invitee = self._store.find_account_by_email(email)
        if invitee is None or not invitee.is_active:
            raise AccountNotFound()
        if any(item.tenant_id == tenant_id for item in self._store.find_memberships(invitee.account_id)):
            raise AlreadyMember()
        membership = self._store.insert_membership(invitee.account_id, tenant_id, role, "pending")
        logger.info("account %s invited %s to tenant %s", inviter_account_id, invitee.account_id, tenant_id)
        return membership

    def list_invitations(self, account_id: str) -> list[TenantMembership]:
        return [item for item in self._store.find_memberships(account_id) if item.status == "pending"]

    def accept_invitation(self, account_id: str, tenant_id: str) -> TenantMembership:
        """Activate a pending membership; raises ``NotAMember`` when there is none."""
        pending = next((item for item in self.list_invitations(account_id) if item.tenant_id == tenant_id), None)
        if pending is None:
            raise NotAMember()
        membership = self._store.update_membership_status(account_id, tenant_id, "active")
        if membership is None:
            raise NotAMember()
        logger.info("account %s joined tenant %s", account_id, tenant_id)
        return TenantMembership(tenant=pending.tenant, membership=membership)

    def _active_membership(self, account_id: str, tenant_id: str) -> TenantMembership | None:
        return next((item for item in self.list_memberships(account_id) if item.tenant_id == tenant_id), None)
