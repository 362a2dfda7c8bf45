"""Identity service orchestrating credentials, sessions, 2FA, and auditing."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime, timedelta
import json
import logging
from typing import Callable, Optional, Tuple

from .account import Account, SecurityEvent
from .contracts import (
    ExternalIdentity,
    NewAccount,
    ProfileUpdate,
    RegisterInput,
    RegistrationResult,
    RequestContext,
    SessionGrant,
    TwoFactorChallenge,
)
from .ledger import SecurityLedger, utcnow
from .tenants import TenantService
from ..errors import (
    AccountNotFound,
    DuplicateEmail,
    FederatedVerificationFailed,
    InvalidCredentials,
    InvalidResetToken,
    InvalidTwoFactorCode,
    TokenInvalid,
    TwoFactorAlreadyEnabled,
    TwoFactorNotConfigured,
    TwoFactorRequired,
    WeakPassword,
)
from ..federation import IdentityProvider
from ..logging_utils import email_fingerprint
from ..notifications import Notifier
from ..repository import CredentialStore, normalize_email
from ..security.passwords import PasswordHasher, validate_password_policy
from ..security.tokens import TokenSigner, generate_reset_token, hash_reset_token
from ..security.totp import TotpEngine, TotpProvisioning, hash_recovery_code, looks_like_totp_code

logger = logging.getLogger(__name__)

RECOVERY_CODE_COUNT = 10
DEFAULT_PASSWORD_RESET_TTL = timedelta(hours=1)

LoginOutcome = SessionGrant | TwoFactorChallenge


class IdentityService:
    """Registration, login, federated exchange, and account self-service.

    The login path is a small state machine: credentials are checked first
    (after the lockout gate); an account with 2FA enabled receives a
    :class:`TwoFactorChallenge` instead of a token and only a correct second
    factor completes the session. Every path that mints a token goes through
    :meth:`TenantService.resolve_active_tenant`, so sessions are always scoped
    to an active membership.
    """

    def __init__(
        self,
        *,
        store: CredentialStore,
        hasher: PasswordHasher,
        signer: TokenSigner,
        totp: TotpEngine,
        ledger: SecurityLedger,
        tenants: TenantService,
        identity_provider: IdentityProvider,
        notifier: Notifier,
        password_reset_ttl: timedelta = DEFAULT_PASSWORD_RESET_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._hasher = hasher
        self._signer = signer
        self._totp = totp
        self._ledger = ledger
        self._tenants = tenants
        self._identity_provider = identity_provider
        self._notifier = notifier
        self._password_reset_ttl = password_reset_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register(self, payload: RegisterInput, context: RequestContext | None = None) -> RegistrationResult:
        """Create a password account with its own tenant and return a session for it.

        Raises
        ------
        WeakPassword
            When the password fails one or more policy rules.
        DuplicateEmail
            When an account with the (normalised) email already exists.
        """
        context = context or RequestContext()
        email = normalize_email(payload.email)
        failures = validate_password_policy(payload.password)
        if failures:
            raise WeakPassword(failures)
        if self._store.find_account_by_email(email) is not None:
            raise DuplicateEmail()

        display_name = payload.display_name.strip() or email.split("@", 1)[0]
        account = self._store.insert_account(
            NewAccount(
                email=email,
                display_name=display_name,
                password_hash=self._hasher.hash(payload.password),
            )
        )
        membership = self._tenants.ensure_default_tenant(account, payload.tenant_name)
        session = self._tenants.issue_session(account, membership.tenant_id)
        self._ledger.emit(
            "registration_succeeded",
            success=True,
            account_id=account.account_id,
            email=account.email,
            context=context,
            detail={"tenant_id": membership.tenant_id},
        )
        logger.info("registered account %s (%s)", account.account_id, email_fingerprint(email))
        self._notify_welcome(account)
        return RegistrationResult(account=account, session=session, membership=membership)

    def login(self, email: str, password: str, context: RequestContext | None = None) -> LoginOutcome:
        """Authenticate with email and password.

        Unknown emails, inactive accounts, federated-only accounts and wrong
        passwords all fail with the same :class:`InvalidCredentials` and count
        toward lockout.
        """
        context = context or RequestContext()
        email = normalize_email(email)
        account = self._store.find_account_by_email(email)
        if account is not None and not account.is_active:
            account = None
        self._ledger.ensure_unlocked(account, email, context)

        if account is None or account.password_hash is None:
            self._hasher.dummy_verify(password)
            reason = "unknown_account" if account is None else "no_password"
            self._ledger.record_failure(account, email, context, reason=reason)
            raise InvalidCredentials()

        if not self._hasher.verify(password, account.password_hash):
            self._ledger.record_failure(account, email, context, reason="bad_password")
            raise InvalidCredentials()

        if account.two_factor_enabled:
            return self._challenge(account, context, method="password")
        return self._complete_login(account, context, method="password")

    def verify_two_factor_login(
        self,
        email: str,
        code: str,
        challenge_token: str,
        context: RequestContext | None = None,
    ) -> SessionGrant:
        """Complete a login that was answered with a :class:`TwoFactorChallenge`.

        ``code`` is either the current TOTP code or an unused recovery code;
        a recovery code is consumed on success. Wrong codes count toward
        lockout exactly like wrong passwords.
        """
        context = context or RequestContext()
        email = normalize_email(email)
        account = self._store.find_account_by_email(email)
        if account is not None and not account.is_active:
            account = None
        self._ledger.ensure_unlocked(account, email, context)

        subject_id = self._signer.verify_challenge(challenge_token)
        if account is None or subject_id != account.account_id:
            raise TokenInvalid()
        if not account.two_factor_enabled or not account.two_factor_secret:
            raise TwoFactorNotConfigured()

        method = self._check_second_factor(account, code)
        if method is None:
            self._ledger.record_failure(
                account, email, context, reason="bad_two_factor_code", event_type="two_factor_failed"
            )
            raise InvalidTwoFactorCode()
        return self._complete_login(account, context, method=method)

    def exchange_federated_session(
        self,
        provider_token: str,
        tenant_name_hint: str | None = None,
        context: RequestContext | None = None,
    ) -> LoginOutcome:
        """Exchange an identity-provider access token for a local session.

        Provisions the account (without a password) and its default tenant on
        first sign-in; later sign-ins refresh the display name and avatar.
        """
        context = context or RequestContext()
        try:
            identity = self._identity_provider.verify_external_token(provider_token)
        except FederatedVerificationFailed:
            self._ledger.emit("federated_login_failed", success=False, context=context)
            raise
        account = self._provision_federated_account(identity, context)
        if not account.is_active:
            raise InvalidCredentials()
        self._ledger.ensure_unlocked(account, account.email, context)

        self._tenants.ensure_default_tenant(account, tenant_name_hint)
        if account.two_factor_enabled:
            return self._challenge(account, context, method="federated")
        return self._complete_login(account, context, method="federated")

    def _provision_federated_account(self, identity: ExternalIdentity, context: RequestContext) -> Account:
        account = self._store.find_account_by_external_subject(identity.subject_id)
        if account is None:
            account = self._store.find_account_by_email(identity.email)
            if account is not None:
                account = self._link_by_email(account, identity, context)

        if account is None:
            display_name = identity.display_name or identity.email.split("@", 1)[0]
            try:
                account = self._store.insert_account(
                    NewAccount(
                        email=identity.email,
                        display_name=display_name,
                        avatar_url=identity.avatar_url,
                        external_subject=identity.subject_id,
                    )
                )
            except DuplicateEmail:
                # Lost a race with a concurrent first sign-in for the same email.
                account = self._store.find_account_by_email(identity.email)
                if account is None:
                    raise
                return self._link_by_email(account, identity, context)
            self._ledger.emit(
                "federated_account_provisioned",
                success=True,
                account_id=account.account_id,
                email=account.email,
                context=context,
            )
            self._notify_welcome(account)
            return account

        changes = {}
        if identity.display_name and identity.display_name != account.display_name:
            changes["display_name"] = identity.display_name
        if identity.avatar_url and identity.avatar_url != account.avatar_url:
            changes["avatar_url"] = identity.avatar_url
        if changes:
            account = self._store.update_account(account.account_id, **changes) or account
        return account

    def _link_by_email(self, account: Account, identity: ExternalIdentity, context: RequestContext) -> Account:
        """Attach the provider subject to an account found by email.

        An account already linked to a different subject is never taken over:
        the exchange fails instead of re-linking it.
        """
        if account.external_subject == identity.subject_id:
            return account
        if account.external_subject is not None:
            logger.warning("federated subject mismatch for account %s", account.account_id)
            self._ledger.emit(
                "federated_login_failed",
                success=False,
                account_id=account.account_id,
                email=account.email,
                context=context,
                detail={"reason": "subject_mismatch"},
            )
            raise FederatedVerificationFailed("this email is linked to a different provider identity")
        linked = self._store.update_account(account.account_id, external_subject=identity.subject_id)
        logger.info("linked federated identity to account %s", account.account_id)
        return linked or account

    def _challenge(self, account: Account, context: RequestContext, *, method: str) -> TwoFactorChallenge:
        self._ledger.emit(
            "two_factor_challenged",
            success=True,
            account_id=account.account_id,
            email=account.email,
            context=context,
            detail={"method": method},
        )
        return TwoFactorChallenge(
            email=account.email,
            challenge_token=self._signer.issue_challenge(account.account_id),
        )

    def _complete_login(self, account: Account, context: RequestContext, *, method: str) -> SessionGrant:
        tenant_id = self._tenants.resolve_active_tenant(account)
        self._ledger.record_success(account, context, detail={"method": method, "tenant_id": tenant_id})
        return self._tenants.issue_session(account, tenant_id)

    def _check_second_factor(self, account: Account, code: str) -> str | None:
        """Return ``"totp"`` or ``"recovery_code"`` for an accepted code, else ``None``."""
        code = (code or "").strip()
        if not code:
            return None
        if looks_like_totp_code(code):
            secret = self._totp.unseal(account.two_factor_secret)
            return "totp" if self._totp.verify_code(secret, code) else None
        if self._store.consume_recovery_code(account.account_id, hash_recovery_code(code), self._clock()):
            remaining = self._store.count_unused_recovery_codes(account.account_id)
            logger.info("recovery code used for account %s (%d left)", account.account_id, remaining)
            return "recovery_code"
        return None

    # ------------------------------------------------------------------
    # Account self-service
    # ------------------------------------------------------------------

    def get_profile(self, account_id: str) -> Account:
        account = self._store.find_account_by_id(account_id)
        if account is None:
            raise AccountNotFound()
        return account

    def update_profile(
        self, account_id: str, update: ProfileUpdate, context: RequestContext | None = None
    ) -> Account:
        changes = update.changes()
        if "display_name" in changes:
            changes["display_name"] = changes["display_name"].strip()
        account = self._store.update_account(account_id, **changes)
        if account is None:
            raise AccountNotFound()
        if changes:
            self._ledger.emit(
                "profile_updated",
                success=True,
                account_id=account_id,
                email=account.email,
                context=context,
                detail={"fields": sorted(changes)},
            )
        return account

    def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        context: RequestContext | None = None,
    ) -> None:
        """Replace the password after re-checking the current one.

        Federated-only accounts (no password yet) may set one without
        ``current_password``.
        """
        context = context or RequestContext()
        account = self.get_profile(account_id)
        self._ledger.ensure_unlocked(account, account.email, context)
        if account.password_hash is not None and not self._hasher.verify(
            current_password or "", account.password_hash
        ):
            self._ledger.record_failure(
                account, account.email, context, reason="bad_password", event_type="password_change_failed"
            )
            raise InvalidCredentials()
        failures = validate_password_policy(new_password)
        if failures:
            raise WeakPassword(failures)
        self._store.update_account(account_id, password_hash=self._hasher.hash(new_password))
        self._ledger.emit(
            "password_changed", success=True, account_id=account_id, email=account.email, context=context
        )

    def logout(self, account_id: str, context: RequestContext | None = None) -> None:
        """Audit hook only; session tokens are stateless and expire on their own."""
        self._ledger.emit("logout", success=True, account_id=account_id, context=context)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, context: RequestContext | None = None) -> None:
        """Send a single-use reset token when ``email`` belongs to an active account.

        The outcome is never reported to the caller, so the endpoint cannot be
        used to discover which emails have accounts. Requesting again replaces
        any earlier unused token.
        """
        context = context or RequestContext()
        email = normalize_email(email)
        account = self._store.find_account_by_email(email)
        if account is None or not account.is_active:
            logger.info("password reset requested for unknown email %s", email_fingerprint(email))
            self._ledger.emit(
                "password_reset_requested",
                success=False,
                email=email,
                context=context,
                detail={"reason": "unknown_account"},
            )
            return

        token = generate_reset_token()
        expires_at = self._clock() + self._password_reset_ttl
        self._store.insert_password_reset(account.account_id, hash_reset_token(token), expires_at)
        self._ledger.emit(
            "password_reset_requested",
            success=True,
            account_id=account.account_id,
            email=account.email,
            context=context,
            detail={"expires_at": expires_at.isoformat()},
        )
        try:
            self._notifier.send_password_reset(account.email, token)
        except Exception:
            logger.error("password reset notification failed for %s", email_fingerprint(account.email), exc_info=True)

    def reset_password(
        self,
        token: str,
        new_password: str,
        code: str | None = None,
        context: RequestContext | None = None,
    ) -> None:
        """Set a new password using a reset token, then clear any lockout.

        Accounts with 2FA enabled must also present a TOTP or recovery
        ``code``; the token is only consumed once every check has passed.

        Raises
        ------
        WeakPassword
            When ``new_password`` fails the policy (the token stays usable).
        InvalidResetToken
            When the token is unknown, expired, or already used.
        TwoFactorRequired
            When the account has 2FA enabled and no ``code`` was given.
        """
        context = context or RequestContext()
        failures = validate_password_policy(new_password)
        if failures:
            raise WeakPassword(failures)

        token_hash = hash_reset_token(token or "")
        now = self._clock()
        account_id = self._store.find_password_reset(token_hash, now)
        account = self._store.find_account_by_id(account_id) if account_id else None
        if account is None or not account.is_active:
            self._ledger.emit(
                "password_reset_failed", success=False, context=context, detail={"reason": "invalid_token"}
            )
            raise InvalidResetToken()

        if account.two_factor_enabled:
            if not (code or "").strip():
                raise TwoFactorRequired()
            self._ledger.ensure_unlocked(account, account.email, context)
            if self._check_second_factor(account, code) is None:
                self._ledger.record_failure(
                    account, account.email, context, reason="bad_two_factor_code", event_type="password_reset_failed"
                )
                raise InvalidTwoFactorCode()

        if self._store.consume_password_reset(token_hash, now) != account.account_id:
            raise InvalidResetToken()
        self._store.update_account(account.account_id, password_hash=self._hasher.hash(new_password))
        self._store.reset_failed_logins(account.account_id)
        logger.info("password reset completed for account %s", account.account_id)
        self._ledger.emit(
            "password_reset", success=True, account_id=account.account_id, email=account.email, context=context
        )

    # ------------------------------------------------------------------
    # Two-factor management
    # ------------------------------------------------------------------

    def begin_two_factor_setup(self, account_id: str) -> TotpProvisioning:
        """Generate and store a pending TOTP secret; 2FA stays off until enabled."""
        account = self.get_profile(account_id)
        if account.two_factor_enabled:
            raise TwoFactorAlreadyEnabled()
        provisioning = self._totp.generate_secret(account.email)
        self._store.update_account(account_id, two_factor_secret=self._totp.seal(provisioning.secret))
        self._ledger.emit("two_factor_setup_started", success=True, account_id=account_id, email=account.email)
        return provisioning

    def enable_two_factor(self, account_id: str, code: str, context: RequestContext | None = None) -> list[str]:
        """Confirm the pending secret with a TOTP code and return fresh recovery codes."""
        account = self.get_profile(account_id)
        if account.two_factor_enabled:
            raise TwoFactorAlreadyEnabled()
        if not account.two_factor_secret:
            raise TwoFactorNotConfigured()
        secret = self._totp.unseal(account.two_factor_secret)
        if not self._totp.verify_code(secret, code):
            self._ledger.emit(
                "two_factor_enable_failed", success=False, account_id=account_id, email=account.email, context=context
            )
            raise InvalidTwoFactorCode()
        self._store.update_account(account_id, two_factor_enabled=True)
        codes = self._issue_recovery_codes(account_id)
        self._ledger.emit(
            "two_factor_enabled", success=True, account_id=account_id, email=account.email, context=context
        )
        return codes

    def disable_two_factor(self, account_id: str, code: str, context: RequestContext | None = None) -> None:
        """Turn 2FA off after a valid TOTP or recovery code."""
        account = self._require_two_factor(account_id)
        if self._check_second_factor(account, code) is None:
            self._ledger.record_failure(
                account, account.email, context or RequestContext(),
                reason="bad_two_factor_code", event_type="two_factor_failed",
            )
            raise InvalidTwoFactorCode()
        self._store.update_account(account_id, two_factor_enabled=False, two_factor_secret=None)
        self._store.replace_recovery_codes(account_id, [])
        self._ledger.emit(
            "two_factor_disabled", success=True, account_id=account_id, email=account.email, context=context
        )

    def regenerate_recovery_codes(
        self, account_id: str, code: str, context: RequestContext | None = None
    ) -> list[str]:
        """Replace all recovery codes; requires a current TOTP code."""
        account = self._require_two_factor(account_id)
        secret = self._totp.unseal(account.two_factor_secret)
        if not self._totp.verify_code(secret, code):
            self._ledger.record_failure(
                account, account.email, context or RequestContext(),
                reason="bad_two_factor_code", event_type="two_factor_failed",
            )
            raise InvalidTwoFactorCode()
        codes = self._issue_recovery_codes(account_id)
        self._ledger.emit(
            "recovery_codes_regenerated", success=True, account_id=account_id, email=account.email, context=context
        )
        return codes

    def _require_two_factor(self, account_id: str) -> Account:
        account = self.get_profile(account_id)
        if not account.two_factor_enabled or not account.two_factor_secret:
            raise TwoFactorNotConfigured()
        self._ledger.ensure_unlocked(account, account.email, RequestContext())
        return account

    def _issue_recovery_codes(self, account_id: str) -> list[str]:
        codes = self._totp.generate_recovery_codes(RECOVERY_CODE_COUNT)
        self._store.replace_recovery_codes(account_id, [hash_recovery_code(code) for code in codes])
        return codes

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def list_security_events(
        self, account_id: str, *, limit: int = 50, cursor: str | None = None
    ) -> tuple[list[SecurityEvent], str | None]:
        """Return the account's security events, newest first, with cursor pagination."""
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        events, next_cursor_tuple = self._store.list_security_events(
            account_id, limit=limit, cursor=decoded_cursor
        )
        return events, self._encode_cursor(next_cursor_tuple)

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, event_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "event_id": event_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            return datetime.fromisoformat(data["created_at"]), int(data["event_id"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ValueError("invalid cursor") from exc

    def _notify_welcome(self, account: Account) -> None:
        try:
            self._notifier.send_welcome(account.email, account.display_name)
        except Exception:
            logger.error("welcome notification failed for %s", email_fingerprint(account.email), exc_info=True)
