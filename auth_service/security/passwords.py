"""One-way password hashing used by the authentication service."""

from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher as _Argon2Hasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError


class PasswordHasher(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def matches(self, plaintext: str, hashed: str) -> bool: ...


class Argon2PasswordHasher:
    """Argon2id hasher; the stored string carries its own salt and parameters."""

    def __init__(self, *, time_cost: int | None = None, memory_cost: int | None = None) -> None:
        options: dict[str, int] = {}
        if time_cost is not None:
            options["time_cost"] = time_cost
        if memory_cost is not None:
            options["memory_cost"] = memory_cost
        self._hasher = _Argon2Hasher(type=Type.ID, **options)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def matches(self, plaintext: str, hashed: str) -> bool:
        if not hashed:
            return False
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            # corrupt or foreign hash format
            return False
