"""Database repository for identity, tenant, and security-event data."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Protocol, Sequence, Tuple

import psycopg
from psycopg import sql
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, Membership, SecurityEvent, Tenant, TenantMembership
from .domain.contracts import FailedLoginOutcome, NewAccount, NewTenant, SecurityEventInput
from .errors import DuplicateEmail, SlugTaken, StoreError

logger = logging.getLogger(__name__)

EventCursor = Tuple[datetime, int]

_ACCOUNT_COLUMNS = (
    "account_id",
    "email",
    "display_name",
    "created_at",
    "updated_at",
    "role",
    "password_hash",
    "avatar_url",
    "external_subject",
    "two_factor_secret",
    "two_factor_enabled",
    "failed_login_attempts",
    "locked_until",
    "last_failed_login",
    "is_active",
)

# Only these columns may be written through update_account; column names are
# interpolated as identifiers so they must never come from request input.
UPDATABLE_ACCOUNT_FIELDS = frozenset(
    {
        "display_name",
        "avatar_url",
        "password_hash",
        "external_subject",
        "two_factor_secret",
        "two_factor_enabled",
        "is_active",
    }
)

_TENANT_COLUMNS = ("tenant_id", "name", "slug", "plan", "created_at", "updated_at")
_MEMBERSHIP_COLUMNS = ("account_id", "tenant_id", "role", "status", "joined_at")
_EVENT_COLUMNS = (
    "event_id",
    "account_id",
    "email",
    "event_type",
    "source_address",
    "user_agent",
    "success",
    "detail",
    "created_at",
)


def normalize_email(email: str) -> str:
    """Trim and lower-case an email address for lookups and uniqueness."""
    return email.strip().lower()


class CredentialStore(Protocol):
    """Persistence surface consumed by the identity core.

    Implemented by :class:`AccountRepository` (Postgres) and
    :class:`identity_service.memory_repository.InMemoryAccountRepository`.
    """

    def find_account_by_email(self, email: str) -> Account | None: ...

    def find_account_by_id(self, account_id: str) -> Account | None: ...

    def find_account_by_external_subject(self, subject: str) -> Account | None: ...

    def insert_account(self, payload: NewAccount) -> Account: ...

    def update_account(self, account_id: str, **fields: Any) -> Account | None: ...

    def insert_tenant(self, payload: NewTenant) -> Tenant: ...

    def find_tenant(self, tenant_id: str) -> Tenant | None: ...

    def insert_membership(
        self, account_id: str, tenant_id: str, role: str, status: str = "active"
    ) -> Membership: ...

    def find_memberships(self, account_id: str) -> list[TenantMembership]: ...

    def update_membership_status(self, account_id: str, tenant_id: str, status: str) -> Membership | None: ...

    def create_tenant_with_owner(self, payload: NewTenant, owner_account_id: str) -> TenantMembership: ...

    def insert_security_event(self, payload: SecurityEventInput) -> None: ...

    def list_security_events(
        self, account_id: str, *, limit: int = 50, cursor: EventCursor | None = None
    ) -> tuple[list[SecurityEvent], Optional[EventCursor]]: ...

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> FailedLoginOutcome | None: ...

    def reset_failed_logins(self, account_id: str) -> None: ...

    def release_expired_lock(self, account_id: str, now: datetime) -> bool: ...

    def replace_recovery_codes(self, account_id: str, code_hashes: Sequence[str]) -> None: ...

    def consume_recovery_code(self, account_id: str, code_hash: str, now: datetime) -> bool: ...

    def count_unused_recovery_codes(self, account_id: str) -> int: ...

    def insert_password_reset(self, account_id: str, token_hash: str, expires_at: datetime) -> None: ...

    def find_password_reset(self, token_hash: str, now: datetime) -> str | None: ...

    def consume_password_reset(self, token_hash: str, now: datetime) -> str | None: ...


class AccountRepository:
    """Postgres-backed credential store."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def _connection(self) -> Iterator[psycopg.Connection]:
        """Yield a pooled connection, translating driver errors into ``StoreError``."""
        try:
            with self._pool.connection() as conn:
                yield conn
        except (DuplicateEmail, StoreError):
            raise
        except psycopg.Error as exc:
            logger.error("identity store operation failed: %s", exc.__class__.__name__, exc_info=True)
            raise StoreError("identity store unavailable") from exc

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def find_account_by_email(self, email: str) -> Account | None:
        return self._fetch_account("email", normalize_email(email))

    def find_account_by_id(self, account_id: str) -> Account | None:
        return self._fetch_account("account_id", account_id)

    def find_account_by_external_subject(self, subject: str) -> Account | None:
        return self._fetch_account("external_subject", subject)

    def _fetch_account(self, column: str, value: str) -> Account | None:
        query = sql.SQL("SELECT {columns} FROM accounts WHERE {column} = %s").format(
            columns=sql.SQL(", ").join(map(sql.Identifier, _ACCOUNT_COLUMNS)),
            column=sql.Identifier(column),
        )
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, (value,))
                row = cur.fetchone()
        if not row:
            return None
        return self._map_account(row)

    def insert_account(self, payload: NewAccount) -> Account:
        """Persist a new account; raises ``DuplicateEmail`` on email collision."""
        account_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        query = sql.SQL(
            """
            INSERT INTO accounts (account_id, email, display_name, role, password_hash,
                                  avatar_url, external_subject, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {columns}
            """
        ).format(columns=sql.SQL(", ").join(map(sql.Identifier, _ACCOUNT_COLUMNS)))
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                try:
                    cur.execute(
                        query,
                        (
                            account_id,
                            normalize_email(payload.email),
                            payload.display_name,
                            payload.role,
                            payload.password_hash,
                            payload.avatar_url,
                            payload.external_subject,
                            now,
                            now,
                        ),
                    )
                except psycopg.errors.UniqueViolation as exc:
                    raise DuplicateEmail() from exc
                row = cur.fetchone()
            conn.commit()
        return self._map_account(row)

    def update_account(self, account_id: str, **fields: Any) -> Account | None:
        """Apply a partial update restricted to ``UPDATABLE_ACCOUNT_FIELDS``."""
        unknown = set(fields) - UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        if not fields:
            return self.find_account_by_id(account_id)

        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        ]
        assignments.append(sql.SQL("updated_at = %s"))
        query = sql.SQL("UPDATE accounts SET {assignments} WHERE account_id = %s RETURNING {columns}").format(
            assignments=sql.SQL(", ").join(assignments),
            columns=sql.SQL(", ").join(map(sql.Identifier, _ACCOUNT_COLUMNS)),
        )
        params = [*fields.values(), datetime.now(timezone.utc), account_id]
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
            conn.commit()
        if not row:
            return None
        return self._map_account(row)

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(**dict(zip(_ACCOUNT_COLUMNS, row)))

    # ------------------------------------------------------------------
    # Lockout bookkeeping
    # ------------------------------------------------------------------

    def record_failed_login(
        self, account_id: str, *, threshold: int, lock_until: datetime, now: datetime
    ) -> FailedLoginOutcome | None:
        """Atomically count a failed attempt and lock the account at the threshold.

        The row lock taken by ``UPDATE`` serialises concurrent failures for the
        same account, so exactly one caller observes ``newly_locked``.
        """
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    WITH previous AS (
                        SELECT account_id, locked_until AS previous_lock
                        FROM accounts
                        WHERE account_id = %(account_id)s
                        FOR UPDATE
                    )
                    UPDATE accounts AS a
                    SET failed_login_attempts = a.failed_login_attempts + 1,
                        last_failed_login = %(now)s,
                        locked_until = CASE
                            WHEN a.failed_login_attempts + 1 >= %(threshold)s
                                 AND (a.locked_until IS NULL OR a.locked_until <= %(now)s)
                            THEN %(lock_until)s
                            ELSE a.locked_until
                        END
                    FROM previous
                    WHERE a.account_id = previous.account_id
                    RETURNING a.failed_login_attempts, a.locked_until,
                              (previous.previous_lock IS DISTINCT FROM a.locked_until) AS newly_locked
                    """,
                    {
                        "account_id": account_id,
                        "now": now,
                        "threshold": threshold,
                        "lock_until": lock_until,
                    },
                )
                row = cur.fetchone()
            conn.commit()
        if not row:
            return None
        return FailedLoginOutcome(attempts=row[0], locked_until=row[1], newly_locked=bool(row[2]))

    def reset_failed_logins(self, account_id: str) -> None:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET failed_login_attempts = 0, locked_until = NULL, last_failed_login = NULL
                    WHERE account_id = %s
                      AND (failed_login_attempts <> 0 OR locked_until IS NOT NULL)
                    """,
                    (account_id,),
                )
            conn.commit()

    def release_expired_lock(self, account_id: str, now: datetime) -> bool:
        """Clear an elapsed lock; returns ``True`` only for the caller that cleared it."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE accounts
                    SET failed_login_attempts = 0, locked_until = NULL
                    WHERE account_id = %s AND locked_until IS NOT NULL AND locked_until <= %s
                    RETURNING account_id
                    """,
                    (account_id, now),
                )
                row = cur.fetchone()
            conn.commit()
        return row is not None

    # ------------------------------------------------------------------
    # Tenants and memberships
    # ------------------------------------------------------------------

    def insert_tenant(self, payload: NewTenant) -> Tenant:
        with self._connection() as conn:
            tenant = self._insert_tenant(conn, payload)
            conn.commit()
        return tenant

    def _insert_tenant(self, conn: psycopg.Connection, payload: NewTenant) -> Tenant:
        tenant_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        with conn.cursor(row_factory=tuple_row) as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO tenants (tenant_id, name, slug, plan, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING tenant_id, name, slug, plan, created_at, updated_at
                    """,
                    (tenant_id, payload.name, payload.slug, payload.plan, now, now),
                )
            except psycopg.errors.UniqueViolation as exc:
                raise SlugTaken(payload.slug) from exc
            row = cur.fetchone()
        return Tenant(**dict(zip(_TENANT_COLUMNS, row)))

    def find_tenant(self, tenant_id: str) -> Tenant | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT tenant_id, name, slug, plan, created_at, updated_at
                    FROM tenants
                    WHERE tenant_id = %s
                    """,
                    (tenant_id,),
                )
                row = cur.fetchone()
        if not row:
            return None
        return Tenant(**dict(zip(_TENANT_COLUMNS, row)))

    def insert_membership(
        self, account_id: str, tenant_id: str, role: str, status: str = "active"
    ) -> Membership:
        with self._connection() as conn:
            membership = self._insert_membership(conn, account_id, tenant_id, role, status)
            conn.commit()
        return membership

    def _insert_membership(
        self, conn: psycopg.Connection, account_id: str, tenant_id: str, role: str, status: str
    ) -> Membership:
        with conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(
                """
                INSERT INTO memberships (account_id, tenant_id, role, status, joined_at)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (account_id, tenant_id) DO NOTHING
                """,
                (account_id, tenant_id, role, status, datetime.now(timezone.utc)),
            )
            cur.execute(
                """
                SELECT account_id, tenant_id, role, status, joined_at
                FROM memberships
                WHERE account_id = %s AND tenant_id = %s
                """,
                (account_id, tenant_id),
            )
            row = cur.fetchone()
        return Membership(**dict(zip(_MEMBERSHIP_COLUMNS, row)))

    def create_tenant_with_owner(self, payload: NewTenant, owner_account_id: str) -> TenantMembership:
        """Create a tenant and its active admin membership in one transaction."""
        with self._connection() as conn:
            with conn.transaction():
                tenant = self._insert_tenant(conn, payload)
                membership = self._insert_membership(
                    conn, owner_account_id, tenant.tenant_id, "admin", "active"
                )
        return TenantMembership(tenant=tenant, membership=membership)

    def find_memberships(self, account_id: str) -> list[TenantMembership]:
        """Return every membership of the account, most recently joined first."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT t.tenant_id, t.name, t.slug, t.plan, t.created_at, t.updated_at,
                           m.account_id, m.tenant_id, m.role, m.status, m.joined_at
                    FROM memberships m
                    JOIN tenants t ON t.tenant_id = m.tenant_id
                    WHERE m.account_id = %s
                    ORDER BY m.joined_at DESC, t.tenant_id
                    """,
                    (account_id,),
                )
                rows = cur.fetchall()
        split = len(_TENANT_COLUMNS)
        return [
            TenantMembership(
                tenant=Tenant(**dict(zip(_TENANT_COLUMNS, row[:split]))),
                membership=Membership(**dict(zip(_MEMBERSHIP_COLUMNS, row[split:]))),
            )
            for row in rows
        ]

    def update_membership_status(self, account_id: str, tenant_id: str, status: str) -> Membership | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE memberships
                    SET status = %s
                    WHERE account_id = %s AND tenant_id = %s
                    RETURNING account_id, tenant_id, role, status, joined_at
                    """,
                    (status, account_id, tenant_id),
                )
                row = cur.fetchone()
            conn.commit()
        if not row:
            return None
        return Membership(**dict(zip(_MEMBERSHIP_COLUMNS, row)))

    # ------------------------------------------------------------------
    # Two-factor recovery codes
    # ------------------------------------------------------------------

    def replace_recovery_codes(self, account_id: str, code_hashes: Sequence[str]) -> None:
        now = datetime.now(timezone.utc)
        with self._connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute("DELETE FROM recovery_codes WHERE account_id = %s", (account_id,))
                    cur.executemany(
                        """
                        INSERT INTO recovery_codes (code_id, account_id, code_hash, created_at)
                        VALUES (%s, %s, %s, %s)
                        """,
                        [(str(uuid.uuid4()), account_id, code_hash, now) for code_hash in code_hashes],
                    )

    def consume_recovery_code(self, account_id: str, code_hash: str, now: datetime) -> bool:
        """Mark a recovery code used; only the first redemption succeeds."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE recovery_codes
                    SET used_at = %s
                    WHERE code_id = (
                        SELECT code_id FROM recovery_codes
                        WHERE account_id = %s AND code_hash = %s AND used_at IS NULL
                        LIMIT 1
                        FOR UPDATE SKIP LOCKED
                    )
                    RETURNING code_id
                    """,
                    (now, account_id, code_hash),
                )
                row = cur.fetchone()
            conn.commit()
        return row is not None

    def count_unused_recovery_codes(self, account_id: str) -> int:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT COUNT(*) FROM recovery_codes WHERE account_id = %s AND used_at IS NULL",
                    (account_id,),
                )
                row = cur.fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Password resets
    # ------------------------------------------------------------------

    def insert_password_reset(self, account_id: str, token_hash: str, expires_at: datetime) -> None:
        """Store a reset token digest, invalidating the account's earlier unused tokens."""
        now = datetime.now(timezone.utc)
        with self._connection() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        "DELETE FROM password_reset_tokens WHERE account_id = %s AND used_at IS NULL",
                        (account_id,),
                    )
                    cur.execute(
                        """
                        INSERT INTO password_reset_tokens (token_id, account_id, token_hash, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (str(uuid.uuid4()), account_id, token_hash, expires_at, now),
                    )

    def find_password_reset(self, token_hash: str, now: datetime) -> str | None:
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    SELECT account_id FROM password_reset_tokens
                    WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                    """,
                    (token_hash, now),
                )
                row = cur.fetchone()
        return row[0] if row else None

    def consume_password_reset(self, token_hash: str, now: datetime) -> str | None:
        """Mark a reset token used; only the first redemption gets the account id."""
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    """
                    UPDATE password_reset_tokens
                    SET used_at = %s
                    WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s
                    RETURNING account_id
                    """,
                    (now, token_hash, now),
                )
                row = cur.fetchone()
            conn.commit()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def insert_security_event(self, payload: SecurityEventInput) -> None:
        """Append an entry to the security event log."""
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO security_events (account_id, email, event_type, source_address,
                                                 user_agent, success, detail, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        payload.account_id,
                        payload.email,
                        payload.event_type,
                        payload.source_address,
                        payload.user_agent,
                        payload.success,
                        Json(payload.detail or {}),
                        datetime.now(timezone.utc),
                    ),
                )
            conn.commit()

    def list_security_events(
        self, account_id: str, *, limit: int = 50, cursor: EventCursor | None = None
    ) -> tuple[list[SecurityEvent], Optional[EventCursor]]:
        """Return an account's security events newest first with cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["account_id = %s"]
        params: list[Any] = [account_id]
        if cursor:
            clauses.append("(created_at, event_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT event_id, account_id, email, event_type, source_address, user_agent,
                   success, detail, created_at
            FROM security_events
            WHERE {where_sql}
            ORDER BY created_at DESC, event_id DESC
            LIMIT %s
        """
        params.append(limit)

        records: list[SecurityEvent] = []
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    values = dict(zip(_EVENT_COLUMNS, row))
                    values["detail"] = values["detail"] or {}
                    records.append(SecurityEvent(**values))

        next_cursor: EventCursor | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.event_id)
        return records, next_cursor
