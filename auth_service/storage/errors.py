from __future__ import annotations


class DuplicateEmailError(Exception):
    """Raised when saving an account whose email belongs to another account."""

    def __init__(self, email: str) -> None:
        super().__init__("email already registered")
        self.email = email


class DuplicateTokenError(Exception):
    """Raised when a refresh-token family identifier is inserted twice."""

    def __init__(self, jti: str) -> None:
        super().__init__("refresh token identifier already exists")
        self.jti = jti
