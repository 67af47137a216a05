"""In-memory backing store used for local development and tests."""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from ..domain.account import Account, Role
from ..domain.tokens import RefreshTokenRecord, SingleUseToken, TokenPurpose
from .errors import DuplicateEmailError, DuplicateTokenError

logger = logging.getLogger(__name__)


@dataclass
class _State:
    accounts: dict[str, Account] = field(default_factory=dict)
    email_index: dict[str, str] = field(default_factory=dict)
    roles: dict[str, Role] = field(default_factory=dict)
    refresh_tokens: dict[str, RefreshTokenRecord] = field(default_factory=dict)
    single_use: dict[tuple[str, TokenPurpose], SingleUseToken] = field(default_factory=dict)

    def snapshot(self) -> "_State":
        # stored accounts are private copies, so copying the containers is enough
        return _State(
            accounts=dict(self.accounts),
            email_index=dict(self.email_index),
            roles=dict(self.roles),
            refresh_tokens=dict(self.refresh_tokens),
            single_use=dict(self.single_use),
        )


class MemoryCredentialStore:
    def __init__(self, state: _State) -> None:
        self._state = state

    def find_by_email(self, email: str, *, for_update: bool = False) -> Account | None:
        # the enclosing transaction already holds the store lock
        account_id = self._state.email_index.get(email)
        if account_id is None:
            return None
        return self.find_by_id(account_id)

    def find_by_id(self, account_id: str, *, for_update: bool = False) -> Account | None:
        account = self._state.accounts.get(account_id)
        return copy.deepcopy(account) if account is not None else None

    def exists_by_email(self, email: str) -> bool:
        return email in self._state.email_index

    def save(self, account: Account) -> Account:
        owner = self._state.email_index.get(account.email)
        if owner is not None and owner != account.account_id:
            raise DuplicateEmailError(account.email)
        previous = self._state.accounts.get(account.account_id)
        if previous is not None and previous.email != account.email:
            self._state.email_index.pop(previous.email, None)
        unknown = [code for code in account.roles if code not in self._state.roles]
        if unknown:
            raise ValueError(f"unknown role codes: {unknown}")
        self._state.accounts[account.account_id] = copy.deepcopy(account)
        self._state.email_index[account.email] = account.account_id
        return account

    def find_role_by_code(self, code: str) -> Role | None:
        role = self._state.roles.get(code)
        return copy.copy(role) if role is not None else None

    def save_role(self, role: Role) -> Role:
        existing = self._state.roles.get(role.code)
        if existing is not None:
            return copy.copy(existing)
        self._state.roles[role.code] = copy.copy(role)
        return role


class MemoryRefreshTokenLedger:
    def __init__(self, state: _State) -> None:
        self._state = state

    def insert(self, record: RefreshTokenRecord) -> None:
        if record.jti in self._state.refresh_tokens:
            raise DuplicateTokenError(record.jti)
        self._state.refresh_tokens[record.jti] = record

    def find_by_jti(self, jti: str, *, for_update: bool = False) -> RefreshTokenRecord | None:
        # the enclosing transaction already holds the store lock
        return self._state.refresh_tokens.get(jti)

    def mark_rotated(self, jti: str, replaced_by_jti: str) -> bool:
        record = self._state.refresh_tokens.get(jti)
        if record is None or record.revoked:
            return False
        self._state.refresh_tokens[jti] = record.rotated(replaced_by_jti)
        return True

    def list_for_account(self, account_id: str) -> list[RefreshTokenRecord]:
        records = [r for r in self._state.refresh_tokens.values() if r.account_id == account_id]
        return sorted(records, key=lambda r: r.issued_at)


class MemorySingleUseTokenStore:
    def __init__(self, state: _State) -> None:
        self._state = state

    def replace(self, token: SingleUseToken) -> None:
        self.delete(token.email, token.purpose)
        self._state.single_use[(token.email, token.purpose)] = token

    def find(self, email: str, purpose: TokenPurpose, *, for_update: bool = False) -> SingleUseToken | None:
        return self._state.single_use.get((email, purpose))

    def delete(self, email: str, purpose: TokenPurpose) -> int:
        return 1 if self._state.single_use.pop((email, purpose), None) is not None else 0


@dataclass
class MemorySession:
    accounts: MemoryCredentialStore
    ledger: MemoryRefreshTokenLedger
    tokens: MemorySingleUseTokenStore


class MemoryStore:
    """Process-local store with all-or-nothing transactions.

    Transactions are serialised by a re-entrant lock; a snapshot taken on
    entry is restored when the block raises, so partial writes are never
    observable.
    """

    def __init__(self) -> None:
        self._state = _State()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator[MemorySession]:
        with self._lock:
            snapshot = self._state.snapshot()
            session = MemorySession(
                accounts=MemoryCredentialStore(self._state),
                ledger=MemoryRefreshTokenLedger(self._state),
                tokens=MemorySingleUseTokenStore(self._state),
            )
            try:
                yield session
            except BaseException:
                logger.debug("rolling back in-memory transaction")
                self._restore(snapshot)
                raise

    def _restore(self, snapshot: _State) -> None:
        self._state.accounts = snapshot.accounts
        self._state.email_index = snapshot.email_index
        self._state.roles = snapshot.roles
        self._state.refresh_tokens = snapshot.refresh_tokens
        self._state.single_use = snapshot.single_use
