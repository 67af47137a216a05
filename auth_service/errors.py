"""Error taxonomy surfaced by the authentication core."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    NOT_FOUND = "NOT_FOUND"


class AuthError(ValueError):
    """Single distinguishable failure raised by :class:`AuthService` operations.

    ``kind`` is the coarse category callers branch on; ``reason`` is a stable
    machine-readable code (for example ``INVALID_CREDENTIALS`` or
    ``REVOKED_OR_EXPIRED``) and the exception message is safe to show to users.
    """

    def __init__(self, kind: ErrorKind, reason: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.reason = reason
        self.message = message

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.value}, reason={self.reason}, message={self.message!r})"


def validation_error(reason: str, message: str) -> AuthError:
    return AuthError(ErrorKind.VALIDATION, reason, message)


def conflict(reason: str, message: str) -> AuthError:
    return AuthError(ErrorKind.CONFLICT, reason, message)


def unauthenticated(reason: str, message: str) -> AuthError:
    return AuthError(ErrorKind.UNAUTHENTICATED, reason, message)


def not_found(reason: str, message: str) -> AuthError:
    return AuthError(ErrorKind.NOT_FOUND, reason, message)
