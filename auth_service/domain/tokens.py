"""Persisted token value objects: refresh-ledger records and single-use tokens."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum


class TokenPurpose(str, Enum):
    VERIFY = "VERIFY"
    RESET = "RESET"


@dataclass(frozen=True, slots=True)
class RefreshTokenRecord:
    """Ledger entry for one member of a refresh-token family."""

    token_id: str
    account_id: str
    jti: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    replaced_by_jti: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def rotated(self, replaced_by_jti: str) -> "RefreshTokenRecord":
        """Return the revoked copy of this record linked to its successor."""
        if self.revoked or self.replaced_by_jti is not None:
            raise ValueError(f"refresh token {self.jti} already rotated")
        return replace(self, revoked=True, replaced_by_jti=replaced_by_jti)


@dataclass(frozen=True, slots=True)
class SingleUseToken:
    """Short-lived code scoped to one email and one purpose."""

    token_id: str
    email: str
    token: str
    purpose: TokenPurpose
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


def new_refresh_record(*, account_id: str, jti: str, now: datetime, ttl_seconds: int) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_id=str(uuid.uuid4()),
        account_id=account_id,
        jti=jti,
        issued_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )


def new_single_use_token(
    *, email: str, token: str, purpose: TokenPurpose, now: datetime, ttl_seconds: int
) -> SingleUseToken:
    return SingleUseToken(
        token_id=str(uuid.uuid4()),
        email=email,
        token=token,
        purpose=purpose,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )
