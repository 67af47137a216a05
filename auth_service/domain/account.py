from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class AccountStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"


@dataclass(slots=True)
class Role:
    """Shared role row referenced by code from any number of accounts."""

    role_id: str
    code: str
    name: str


@dataclass(slots=True)
class Account:
    """Aggregate root for a registered identity."""

    account_id: str
    email: str
    password_hash: str
    display_name: str
    status: AccountStatus
    created_at: datetime
    updated_at: datetime
    roles: list[str] = field(default_factory=list)
    email_verified_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status is AccountStatus.ACTIVE


def normalize_email(email: str) -> str:
    return email.strip().lower()
