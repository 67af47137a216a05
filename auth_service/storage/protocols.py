"""Interfaces of the stores consumed by the authentication service.

Every operation runs against a :class:`StoreSession` obtained from
``Store.transaction()``; the session's writes become visible together when the
``with`` block exits normally and are discarded when it raises.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Protocol

from ..domain.account import Account, Role
from ..domain.tokens import RefreshTokenRecord, SingleUseToken, TokenPurpose


class CredentialStore(Protocol):
    def find_by_email(self, email: str, *, for_update: bool = False) -> Account | None: ...

    def find_by_id(self, account_id: str, *, for_update: bool = False) -> Account | None: ...

    def exists_by_email(self, email: str) -> bool: ...

    def save(self, account: Account) -> Account: ...

    def find_role_by_code(self, code: str) -> Role | None: ...

    def save_role(self, role: Role) -> Role: ...


class RefreshTokenLedger(Protocol):
    def insert(self, record: RefreshTokenRecord) -> None: ...

    def find_by_jti(self, jti: str, *, for_update: bool = False) -> RefreshTokenRecord | None: ...

    def mark_rotated(self, jti: str, replaced_by_jti: str) -> bool: ...

    def list_for_account(self, account_id: str) -> list[RefreshTokenRecord]: ...


class SingleUseTokenStore(Protocol):
    def replace(self, token: SingleUseToken) -> None: ...

    def find(self, email: str, purpose: TokenPurpose, *, for_update: bool = False) -> SingleUseToken | None: ...

    def delete(self, email: str, purpose: TokenPurpose) -> int: ...


class StoreSession(Protocol):
    accounts: CredentialStore
    ledger: RefreshTokenLedger
    tokens: SingleUseTokenStore


class Store(Protocol):
    def transaction(self) -> AbstractContextManager[StoreSession]: ...
