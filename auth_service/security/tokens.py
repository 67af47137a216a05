"""Utilities for issuing and validating application JWTs."""

from __future__ import annotations

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

import jwt

Clock = Callable[[], datetime]

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
_REGISTERED_CLAIMS = frozenset({"iss", "sub", "iat", "exp"})
_CODE_ALPHABET = string.ascii_lowercase + string.digits


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class TokenClaims:
    """Verified content of a token produced by :class:`TokenCodec`."""

    subject: str
    claims: dict[str, Any]
    issued_at: datetime
    expires_at: datetime

    @property
    def token_type(self) -> str | None:
        return self.claims.get("type")

    @property
    def jti(self) -> str | None:
        return self.claims.get("jti")

    @property
    def roles(self) -> list[str]:
        return list(self.claims.get("roles") or [])


class TokenCodec:
    """Encode and validate HS256-signed, time-bounded tokens.

    The codec holds no mutable state: the signing key, issuer and clock are
    fixed at construction so a single instance can be shared across threads.
    """

    algorithm = "HS256"

    def __init__(self, secret: str, *, issuer: str, clock: Clock = utc_now) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret
        self._issuer = issuer
        self._clock = clock

    def issue(self, subject: str, claims: Mapping[str, Any] | None, ttl_seconds: int) -> str:
        """Create a signed token for ``subject`` valid for ``ttl_seconds``.

        Args:
            subject: Value embedded in the ``sub`` claim.
            claims: Additional claims. Registered claims (``iss``, ``sub``,
                ``iat``, ``exp``) are always set by the codec and cannot be
                overridden.
            ttl_seconds: Lifetime of the token measured from the codec clock.
        """
        now = self._clock()
        payload: dict[str, Any] = {
            key: value for key, value in (claims or {}).items() if key not in _REGISTERED_CLAIMS
        }
        payload.update(
            {
                "iss": self._issuer,
                "sub": subject,
                "iat": int(now.timestamp()),
                "exp": int((now + timedelta(seconds=ttl_seconds)).timestamp()),
            }
        )
        return jwt.encode(payload, self._secret, algorithm=self.algorithm)

    def validate(self, token: str) -> TokenClaims | None:
        """Return the verified claims, or ``None`` for any invalid token.

        Malformed, tampered, foreign-issuer and expired tokens all yield ``None``.
        """
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                issuer=self._issuer,
                options={"require": ["sub", "iat", "exp"], "verify_exp": False, "verify_iat": False},
            )
        except jwt.PyJWTError:
            return None

        try:
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return None
        if self._clock() >= expires_at:
            return None

        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        extra = {key: value for key, value in payload.items() if key not in _REGISTERED_CLAIMS}
        return TokenClaims(subject=subject, claims=extra, issued_at=issued_at, expires_at=expires_at)

    def issue_access_token(self, subject: str, roles: list[str], ttl_seconds: int) -> str:
        """Access token: subject plus its role codes."""
        return self.issue(subject, {"roles": sorted(roles), "type": ACCESS_TOKEN_TYPE}, ttl_seconds)

    def issue_refresh_token(self, subject: str, jti: str, ttl_seconds: int) -> str:
        """Refresh token: subject plus the family identifier naming its ledger record."""
        return self.issue(subject, {"jti": jti, "type": REFRESH_TOKEN_TYPE}, ttl_seconds)


def generate_code(length: int = 8) -> str:
    """Return a random lowercase alphanumeric code drawn from ``secrets``."""
    if length < 1:
        raise ValueError("code length must be positive")
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def generate_jti() -> str:
    """Return a fresh, never-reused refresh-token family identifier."""
    return secrets.token_urlsafe(24)
