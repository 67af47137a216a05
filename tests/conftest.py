from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest

from auth_service.config import Settings
from auth_service.domain.contracts import RegisterAccountInput
from auth_service.domain.service import AuthService
from auth_service.events import InMemoryEventPublisher
from auth_service.mail import InMemoryMailer
from auth_service.security.passwords import Argon2PasswordHasher
from auth_service.security.tokens import TokenCodec
from auth_service.storage.memory import MemoryStore

TEST_SECRET = "test-signing-secret-with-at-least-32-bytes"
PASSWORD = "pw123456"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass
class Harness:
    service: AuthService
    store: MemoryStore
    mailer: InMemoryMailer
    publisher: InMemoryEventPublisher
    codec: TokenCodec
    clock: FakeClock
    settings: Settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        jwt_secret=TEST_SECRET,
        jwt_issuer="auth-service-test",
        jwt_ttl_seconds=3600,
        refresh_ttl_seconds=604800,
        single_use_ttl_seconds=3600,
        single_use_code_length=8,
        password_min_length=8,
        storage_backend="memory",
        mailer_backend="memory",
        event_backend="memory",
    )


@pytest.fixture
def harness(settings: Settings, clock: FakeClock) -> Harness:
    """Service wired to in-memory collaborators and a controllable clock."""
    store = MemoryStore()
    mailer = InMemoryMailer()
    publisher = InMemoryEventPublisher()
    codec = TokenCodec(settings.jwt_secret, issuer=settings.jwt_issuer, clock=clock)
    service = AuthService(
        store,
        codec=codec,
        hasher=Argon2PasswordHasher(time_cost=1, memory_cost=1024),
        mailer=mailer,
        publisher=publisher,
        settings=settings,
        clock=clock,
    )
    return Harness(
        service=service,
        store=store,
        mailer=mailer,
        publisher=publisher,
        codec=codec,
        clock=clock,
        settings=settings,
    )


def register_and_verify(harness: Harness, email: str = "a@x.com", password: str = PASSWORD) -> str:
    """Register ``email`` and complete verification, returning the account id."""
    profile = harness.service.register(
        RegisterAccountInput(email=email, password=password, display_name="A")
    )
    harness.service.send_verification_email(email)
    code = harness.mailer.last_code(email)
    assert code is not None
    harness.service.verify_email(email, code)
    return profile.account_id
