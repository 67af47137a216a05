"""Postgres-backed stores for accounts, refresh-token ledger and single-use tokens."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from psycopg import Connection
from psycopg.errors import UniqueViolation
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool

from ..domain.account import Account, AccountStatus, Role
from ..domain.tokens import RefreshTokenRecord, SingleUseToken, TokenPurpose
from .errors import DuplicateEmailError, DuplicateTokenError

logger = logging.getLogger(__name__)

_ACCOUNT_SELECT = """
    SELECT a.account_id, a.email, a.password_hash, a.display_name, a.status,
           a.created_at, a.updated_at, a.email_verified_at,
           COALESCE(array_agg(r.code ORDER BY r.code) FILTER (WHERE r.code IS NOT NULL), '{}')
    FROM accounts a
    LEFT JOIN account_roles ar ON ar.account_id = a.account_id
    LEFT JOIN roles r ON r.role_id = ar.role_id
"""

_REFRESH_COLUMNS = "token_id, account_id, jti, issued_at, expires_at, revoked, replaced_by_jti"
_SINGLE_USE_COLUMNS = "token_id, email, token, purpose, created_at, expires_at"


class PostgresCredentialStore:
    """Account and role persistence bound to one transactional connection."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def find_by_email(self, email: str, *, for_update: bool = False) -> Account | None:
        if for_update:
            self._lock_account("email", email)
        return self._fetch_account("WHERE a.email = %s", email)

    def find_by_id(self, account_id: str, *, for_update: bool = False) -> Account | None:
        if for_update:
            self._lock_account("account_id", account_id)
        return self._fetch_account("WHERE a.account_id = %s", account_id)

    def _lock_account(self, column: str, value: str) -> None:
        # the aggregate read cannot take FOR UPDATE, so lock the base row first
        with self._conn.cursor() as cur:
            cur.execute(f"SELECT 1 FROM accounts WHERE {column} = %s FOR UPDATE", (value,))

    def exists_by_email(self, email: str) -> bool:
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute("SELECT 1 FROM accounts WHERE email = %s", (email,))
            return cur.fetchone() is not None

    def save(self, account: Account) -> Account:
        """Upsert ``account`` keyed by identifier and replace its role links."""
        with self._conn.cursor(row_factory=tuple_row) as cur:
            try:
                cur.execute(
                    """
                    INSERT INTO accounts (account_id, email, password_hash, display_name, status,
                                          email_verified_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE
                    SET email = EXCLUDED.email,
                        password_hash = EXCLUDED.password_hash,
                        display_name = EXCLUDED.display_name,
                        status = EXCLUDED.status,
                        email_verified_at = EXCLUDED.email_verified_at,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        account.account_id,
                        account.email,
                        account.password_hash,
                        account.display_name,
                        account.status.value,
                        account.email_verified_at,
                        account.created_at,
                        account.updated_at,
                    ),
                )
            except UniqueViolation as exc:
                raise DuplicateEmailError(account.email) from exc

            cur.execute("DELETE FROM account_roles WHERE account_id = %s", (account.account_id,))
            if account.roles:
                cur.execute(
                    """
                    INSERT INTO account_roles (account_id, role_id)
                    SELECT %s, role_id FROM roles WHERE code = ANY(%s::text[])
                    """,
                    (account.account_id, list(account.roles)),
                )
        return account

    def find_role_by_code(self, code: str) -> Role | None:
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute("SELECT role_id, code, name FROM roles WHERE code = %s", (code,))
            row = cur.fetchone()
        return _map_role(row) if row else None

    def save_role(self, role: Role) -> Role:
        """Insert ``role`` or return the row a concurrent writer already created."""
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(
                """
                INSERT INTO roles (role_id, code, name)
                VALUES (%s, %s, %s)
                ON CONFLICT (code) DO NOTHING
                RETURNING role_id, code, name
                """,
                (role.role_id, role.code, role.name),
            )
            row = cur.fetchone()
        if row:
            return _map_role(row)
        existing = self.find_role_by_code(role.code)
        if existing is None:
            raise RuntimeError(f"role {role.code} vanished after conflicting insert")
        return existing

    def _fetch_account(self, where_sql: str, value: str) -> Account | None:
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(f"{_ACCOUNT_SELECT} {where_sql} GROUP BY a.account_id", (value,))
            row = cur.fetchone()
        if not row:
            return None
        return Account(
            account_id=str(row[0]),
            email=row[1],
            password_hash=row[2],
            display_name=row[3],
            status=AccountStatus(row[4]),
            created_at=row[5],
            updated_at=row[6],
            email_verified_at=row[7],
            roles=list(row[8]),
        )


class PostgresRefreshTokenLedger:
    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def insert(self, record: RefreshTokenRecord) -> None:
        with self._conn.cursor() as cur:
            try:
                cur.execute(
                    f"""
                    INSERT INTO refresh_tokens ({_REFRESH_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.token_id,
                        record.account_id,
                        record.jti,
                        record.issued_at,
                        record.expires_at,
                        record.revoked,
                        record.replaced_by_jti,
                    ),
                )
            except UniqueViolation as exc:
                raise DuplicateTokenError(record.jti) from exc

    def find_by_jti(self, jti: str, *, for_update: bool = False) -> RefreshTokenRecord | None:
        """Return the ledger record for ``jti``; ``for_update`` locks the row until commit."""
        lock = " FOR UPDATE" if for_update else ""
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(f"SELECT {_REFRESH_COLUMNS} FROM refresh_tokens WHERE jti = %s{lock}", (jti,))
            row = cur.fetchone()
        return _map_refresh(row) if row else None

    def mark_rotated(self, jti: str, replaced_by_jti: str) -> bool:
        with self._conn.cursor() as cur:
            cur.execute(
                """
                UPDATE refresh_tokens
                SET revoked = TRUE, replaced_by_jti = %s
                WHERE jti = %s AND revoked = FALSE AND replaced_by_jti IS NULL
                """,
                (replaced_by_jti, jti),
            )
            return cur.rowcount == 1

    def list_for_account(self, account_id: str) -> list[RefreshTokenRecord]:
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(
                f"SELECT {_REFRESH_COLUMNS} FROM refresh_tokens WHERE account_id = %s ORDER BY issued_at",
                (account_id,),
            )
            return [_map_refresh(row) for row in cur.fetchall()]


class PostgresSingleUseTokenStore:
    """Single-use tokens; writers for one (email, purpose) serialise on an advisory lock."""

    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def _lock(self, email: str, purpose: TokenPurpose) -> None:
        with self._conn.cursor() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (f"{email}:{purpose.value}",))

    def replace(self, token: SingleUseToken) -> None:
        self._lock(token.email, token.purpose)
        with self._conn.cursor() as cur:
            cur.execute(
                "DELETE FROM single_use_tokens WHERE email = %s AND purpose = %s",
                (token.email, token.purpose.value),
            )
            cur.execute(
                f"INSERT INTO single_use_tokens ({_SINGLE_USE_COLUMNS}) VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    token.token_id,
                    token.email,
                    token.token,
                    token.purpose.value,
                    token.created_at,
                    token.expires_at,
                ),
            )

    def find(self, email: str, purpose: TokenPurpose, *, for_update: bool = False) -> SingleUseToken | None:
        if for_update:
            self._lock(email, purpose)
        with self._conn.cursor(row_factory=tuple_row) as cur:
            cur.execute(
                f"""
                SELECT {_SINGLE_USE_COLUMNS}
                FROM single_use_tokens
                WHERE email = %s AND purpose = %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (email, purpose.value),
            )
            row = cur.fetchone()
        if not row:
            return None
        return SingleUseToken(
            token_id=str(row[0]),
            email=row[1],
            token=row[2],
            purpose=TokenPurpose(row[3]),
            created_at=row[4],
            expires_at=row[5],
        )

    def delete(self, email: str, purpose: TokenPurpose) -> int:
        with self._conn.cursor() as cur:
            cur.execute(
                "DELETE FROM single_use_tokens WHERE email = %s AND purpose = %s",
                (email, purpose.value),
            )
            return cur.rowcount


@dataclass
class PostgresSession:
    accounts: PostgresCredentialStore
    ledger: PostgresRefreshTokenLedger
    tokens: PostgresSingleUseTokenStore


class PostgresStore:
    """Hands out transaction-scoped sessions from a shared connection pool."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    @contextmanager
    def transaction(self) -> Iterator[PostgresSession]:
        """Open one database transaction; commit on normal exit, roll back on error."""
        with self._pool.connection() as conn:
            with conn.transaction():
                yield PostgresSession(
                    accounts=PostgresCredentialStore(conn),
                    ledger=PostgresRefreshTokenLedger(conn),
                    tokens=PostgresSingleUseTokenStore(conn),
                )

    def apply_schema(self) -> None:
        """Create the tables this service needs when they are missing."""
        ddl = Path(__file__).with_name("schema.sql").read_text(encoding="utf-8")
        with self._pool.connection() as conn:
            with conn.transaction():
                conn.execute(ddl)
        logger.info("database schema applied")


def _map_role(row: tuple) -> Role:
    return Role(role_id=str(row[0]), code=row[1], name=row[2])


def _map_refresh(row: tuple) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_id=str(row[0]),
        account_id=str(row[1]),
        jti=row[2],
        issued_at=row[3],
        expires_at=row[4],
        revoked=row[5],
        replaced_by_jti=row[6],
    )
