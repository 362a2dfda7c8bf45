"""Security event log and failed-attempt lockout state machine."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..errors import AccountLocked
from ..logging_utils import email_fingerprint
from ..metrics import AUTH_EVENTS
from ..notifications import Notifier
from ..repository import CredentialStore, normalize_email
from .account import Account
from .contracts import RequestContext, SecurityEventInput

logger = logging.getLogger(__name__)

_MAX_UNKNOWN_EMAIL_ENTRIES = 10_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class _UnknownEmailState:
    last_failure: datetime
    attempts: int = 0
    locked_until: datetime | None = None


class SecurityLedger:
    """Records authentication events and enforces lockout after repeated failures.

    Per account the ledger moves between *Unlocked* and *Locked*:

    * a failure increments the stored counter; reaching ``threshold`` locks the
      account for ``lockout`` and emits ``account_locked``;
    * while locked every attempt is rejected with :class:`AccountLocked`;
    * once the lock has elapsed the next attempt first clears it (emitting
      ``account_unlocked``) and is then evaluated normally;
    * a success resets the counter and lock.

    Failures against emails with no account are tracked in a process-local
    table with the same rules, so lockout behaviour does not reveal whether
    an account exists. Event writes are best-effort and never fail the caller.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        notifier: Notifier,
        threshold: int = 5,
        lockout: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._threshold = threshold
        self._lockout = lockout
        self._clock = clock
        self._unknown: dict[str, _UnknownEmailState] = {}
        self._unknown_lock = threading.Lock()

    @property
    def threshold(self) -> int:
        return self._threshold

    def ensure_unlocked(self, account: Account | None, email: str, context: RequestContext) -> None:
        """Raise :class:`AccountLocked` while a lock is active; clear elapsed locks."""
        now = self._clock()
        if account is None:
            self._ensure_unknown_unlocked(normalize_email(email), now)
            return

        if account.locked_until is None:
            return
        if account.locked_until > now:
            remaining = (account.locked_until - now).total_seconds()
            logger.warning(
                "rejected attempt on locked account %s (%.0fs remaining)", account.account_id, remaining
            )
            raise AccountLocked(remaining)
        if self._store.release_expired_lock(account.account_id, now):
            account.failed_login_attempts = 0
            account.locked_until = None
            logger.info("lock expired for account %s", account.account_id)
            self.emit(
                "account_unlocked",
                success=True,
                account_id=account.account_id,
                email=account.email,
                context=context,
                detail={"reason": "lock_expired"},
            )

    def _ensure_unknown_unlocked(self, email: str, now: datetime) -> None:
        with self._unknown_lock:
            state = self._unknown.get(email)
            if state is None or state.locked_until is None:
                return
            if state.locked_until > now:
                raise AccountLocked((state.locked_until - now).total_seconds())
            del self._unknown[email]

    def record_failure(
        self,
        account: Account | None,
        email: str,
        context: RequestContext,
        *,
        reason: str,
        event_type: str = "login_failed",
    ) -> None:
        """Count one failed attempt, locking the account when the threshold is reached."""
        now = self._clock()
        lock_until = now + self._lockout
        if account is None:
            attempts = self._record_unknown_failure(normalize_email(email), now, lock_until)
            logger.warning("failed attempt for unknown email %s", email_fingerprint(email))
            self.emit(
                event_type,
                success=False,
                email=normalize_email(email),
                context=context,
                detail={"reason": reason, "attempts": attempts},
            )
            return

        outcome = self._store.record_failed_login(
            account.account_id, threshold=self._threshold, lock_until=lock_until, now=now
        )
        if outcome is None:
            return
        account.failed_login_attempts = outcome.attempts
        account.locked_until = outcome.locked_until
        self.emit(
            event_type,
            success=False,
            account_id=account.account_id,
            email=account.email,
            context=context,
            detail={"reason": reason, "attempts": outcome.attempts},
        )
        if outcome.newly_locked:
            logger.warning(
                "account %s locked after %d failed attempts", account.account_id, outcome.attempts
            )
            self.emit(
                "account_locked",
                success=False,
                account_id=account.account_id,
                email=account.email,
                context=context,
                detail={
                    "attempts": outcome.attempts,
                    "locked_until": outcome.locked_until.isoformat() if outcome.locked_until else None,
                },
            )
            self._notify_lockout(account.email)
        else:
            logger.warning(
                "failed attempt %d/%d for account %s", outcome.attempts, self._threshold, account.account_id
            )

    def _record_unknown_failure(self, email: str, now: datetime, lock_until: datetime) -> int:
        with self._unknown_lock:
            state = self._unknown.get(email)
            if state is None:
                if len(self._unknown) >= _MAX_UNKNOWN_EMAIL_ENTRIES:
                    self._prune_unknown(now)
                if len(self._unknown) >= _MAX_UNKNOWN_EMAIL_ENTRIES:
                    # Existing counters are kept; the new email goes untracked.
                    logger.warning("unknown-email lockout table full; not tracking %s", email_fingerprint(email))
                    return 1
                state = self._unknown[email] = _UnknownEmailState(last_failure=now)
            state.attempts += 1
            state.last_failure = now
            if state.attempts >= self._threshold and state.locked_until is None:
                state.locked_until = lock_until
            return state.attempts

    def _prune_unknown(self, now: datetime) -> None:
        """Drop entries whose lock elapsed or whose last failure is older than the lockout window."""
        horizon = now - self._lockout
        expired = [
            email
            for email, state in self._unknown.items()
            if (state.locked_until is not None and state.locked_until <= now)
            or (state.locked_until is None and state.last_failure <= horizon)
        ]
        for email in expired:
            del self._unknown[email]

    def record_success(
        self,
        account: Account,
        context: RequestContext,
        *,
        event_type: str = "login_succeeded",
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Reset lockout state after a successful authentication and log it."""
        if account.failed_login_attempts or account.locked_until is not None:
            self._store.reset_failed_logins(account.account_id)
            account.failed_login_attempts = 0
            account.locked_until = None
        logger.info("%s for account %s", event_type, account.account_id)
        self.emit(
            event_type,
            success=True,
            account_id=account.account_id,
            email=account.email,
            context=context,
            detail=detail,
        )

    def emit(
        self,
        event_type: str,
        *,
        success: bool,
        context: RequestContext | None = None,
        account_id: str | None = None,
        email: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        """Append a security event; storage failures are logged and swallowed."""
        context = context or RequestContext()
        AUTH_EVENTS.labels(event=event_type, success=str(success).lower()).inc()
        try:
            self._store.insert_security_event(
                SecurityEventInput(
                    event_type=event_type,
                    success=success,
                    account_id=account_id,
                    email=email,
                    source_address=context.source_address,
                    user_agent=context.user_agent,
                    detail=detail or {},
                )
            )
        except Exception:
            logger.error("failed to record security event %s", event_type, exc_info=True)

    def _notify_lockout(self, email: str) -> None:
        try:
            self._notifier.send_lockout_notice(email)
        except Exception:
            logger.error("lockout notification failed for %s", email_fingerprint(email), exc_info=True)
