"""Domain-level request and response contracts shared by multiple layers."""

from __future__ import annotations

from dataclasses import dataclass

from .account import Account, AccountStatus


@dataclass(slots=True)
class RegisterAccountInput:
    """Inputs required to register a new account."""

    email: str
    password: str
    display_name: str


@dataclass(slots=True)
class TokenBundle:
    """Encapsulates the access/refresh token pair returned to API consumers."""

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(slots=True)
class AccountProfile:
    """Public view of an account; never carries the password hash."""

    account_id: str
    email: str
    display_name: str
    roles: list[str]
    status: AccountStatus

    @classmethod
    def from_account(cls, account: Account) -> "AccountProfile":
        return cls(
            account_id=account.account_id,
            email=account.email,
            display_name=account.display_name,
            roles=sorted(account.roles),
            status=account.status,
        )


@dataclass(frozen=True, slots=True)
class Principal:
    """Identity extracted from a validated access token."""

    account_id: str
    roles: tuple[str, ...]
