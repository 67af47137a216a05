from __future__ import annotations

import pytest

from auth_service.context import RequestContext
from auth_service.domain.account import AccountStatus
from auth_service.domain.contracts import RegisterAccountInput
from auth_service.domain.tokens import TokenPurpose
from auth_service.errors import AuthError, ErrorKind

from .conftest import PASSWORD, register_and_verify


def _register(harness, email="a@x.com", password=PASSWORD, name="A"):
    return harness.service.register(RegisterAccountInput(email=email, password=password, display_name=name))


def _live_tokens(harness, email, purpose):
    return [token for key, token in harness.store._state.single_use.items() if key == (email, purpose)]


def _ledger(harness, account_id):
    with harness.store.transaction() as session:
        return session.ledger.list_for_account(account_id)


# -- registration ---------------------------------------------------------------


def test_register_creates_pending_account_with_default_role(harness):
    profile = _register(harness, email="New.User@Example.com ")

    assert profile.status is AccountStatus.PENDING
    assert profile.roles == ["CUSTOMER"]
    assert profile.email == "new.user@example.com"
    with harness.store.transaction() as session:
        stored = session.accounts.find_by_id(profile.account_id)
        role = session.accounts.find_role_by_code("CUSTOMER")
    assert stored.password_hash != PASSWORD
    assert stored.email_verified_at is None
    assert role.name == "Customer"


def test_register_reuses_existing_default_role(harness):
    first = _register(harness, email="one@x.com")
    second = _register(harness, email="two@x.com")

    assert first.roles == second.roles == ["CUSTOMER"]
    assert list(harness.store._state.roles) == ["CUSTOMER"]


def test_register_rejects_duplicate_email_case_insensitively(harness):
    _register(harness)

    with pytest.raises(AuthError) as excinfo:
        _register(harness, email="A@X.COM")

    assert excinfo.value.kind is ErrorKind.CONFLICT
    assert excinfo.value.reason == "EMAIL_TAKEN"


@pytest.mark.parametrize(
    ("email", "password", "name", "reason"),
    [
        ("not-an-email", PASSWORD, "A", "INVALID_EMAIL"),
        ("a@x.com", "short", "A", "WEAK_PASSWORD"),
        ("a@x.com", PASSWORD, "   ", "INVALID_NAME"),
    ],
)
def test_register_validates_input(harness, email, password, name, reason):
    with pytest.raises(AuthError) as excinfo:
        _register(harness, email=email, password=password, name=name)

    assert excinfo.value.kind is ErrorKind.VALIDATION
    assert excinfo.value.reason == reason
    assert harness.store._state.accounts == {}


def test_register_publishes_account_created_event(harness):
    context = RequestContext(request_id="req-42")
    profile = harness.service.register(
        RegisterAccountInput(email="a@x.com", password=PASSWORD, display_name="A"), context
    )

    [event] = harness.publisher.events
    assert event.event_type == "AccountCreated"
    assert event.trace_id == "req-42"
    assert event.payload.account_id == profile.account_id
    assert event.payload.email == "a@x.com"
    assert event.payload.created_at == harness.clock.now


def test_register_succeeds_when_event_publisher_fails(harness):
    class BrokenPublisher:
        def publish(self, event):
            raise ConnectionError("broker down")

    harness.service._publisher = BrokenPublisher()

    profile = _register(harness)

    assert profile.status is AccountStatus.PENDING


# -- login ------------------------------------------------------------------------


def test_scenario_a_login_before_verification_is_rejected(harness):
    profile = _register(harness)
    assert profile.status is AccountStatus.PENDING

    with pytest.raises(AuthError) as excinfo:
        harness.service.login("a@x.com", PASSWORD)

    assert excinfo.value.kind is ErrorKind.UNAUTHENTICATED
    assert excinfo.value.reason == "ACCOUNT_NOT_ACTIVE"


def test_scenario_b_register_verify_login_returns_token_pair(harness):
    _register(harness)
    harness.service.send_verification_email("a@x.com")
    code = harness.mailer.last_code("a@x.com")
    harness.service.verify_email("a@x.com", code)

    bundle = harness.service.login("a@x.com", PASSWORD)

    assert bundle.token_type == "Bearer"
    assert bundle.expires_in == 3600
    access = harness.codec.validate(bundle.access_token)
    refresh = harness.codec.validate(bundle.refresh_token)
    assert access.roles == ["CUSTOMER"]
    assert refresh.jti
    [record] = _ledger(harness, access.subject)
    assert record.jti == refresh.jti
    assert record.revoked is False
    assert (record.expires_at - record.issued_at).total_seconds() == 604800


def test_unknown_email_and_wrong_password_fail_identically(harness):
    register_and_verify(harness)

    with pytest.raises(AuthError) as unknown:
        harness.service.login("nobody@x.com", PASSWORD)
    with pytest.raises(AuthError) as wrong:
        harness.service.login("a@x.com", "wrong-password")

    assert unknown.value.kind is wrong.value.kind is ErrorKind.UNAUTHENTICATED
    assert unknown.value.reason == wrong.value.reason == "INVALID_CREDENTIALS"
    assert str(unknown.value) == str(wrong.value)


def test_login_email_lookup_is_case_insensitive(harness):
    register_and_verify(harness)

    assert harness.service.login(" A@X.com", PASSWORD).access_token


# -- refresh rotation -------------------------------------------------------------


def test_scenario_c_refresh_rotates_once_and_rejects_replay(harness):
    account_id = register_and_verify(harness)
    bundle = harness.service.login("a@x.com", PASSWORD)
    old_jti = harness.codec.validate(bundle.refresh_token).jti

    rotated = harness.service.refresh_access_token(bundle.refresh_token)

    new_jti = harness.codec.validate(rotated.refresh_token).jti
    assert new_jti != old_jti
    records = {record.jti: record for record in _ledger(harness, account_id)}
    assert records[old_jti].revoked is True
    assert records[old_jti].replaced_by_jti == new_jti
    assert records[new_jti].revoked is False
    assert [r for r in records.values() if not r.revoked] == [records[new_jti]]

    with pytest.raises(AuthError) as excinfo:
        harness.service.refresh_access_token(bundle.refresh_token)
    assert excinfo.value.kind is ErrorKind.UNAUTHENTICATED
    assert excinfo.value.reason == "REVOKED_OR_EXPIRED"


def test_replay_of_superseded_token_leaves_current_descendant_valid(harness):
    register_and_verify(harness)
    first = harness.service.login("a@x.com", PASSWORD)
    second = harness.service.refresh_access_token(first.refresh_token)

    with pytest.raises(AuthError):
        harness.service.refresh_access_token(first.refresh_token)

    third = harness.service.refresh_access_token(second.refresh_token)
    assert third.refresh_token


def test_refresh_rejects_invalid_envelopes(harness):
    register_and_verify(harness)
    bundle = harness.service.login("a@x.com", PASSWORD)

    for candidate in ("garbage", bundle.access_token):
        with pytest.raises(AuthError) as excinfo:
            harness.service.refresh_access_token(candidate)
        assert excinfo.value.reason == "INVALID_REFRESH"


def test_refresh_with_unknown_family_identifier_is_not_found(harness):
    account_id = register_and_verify(harness)
    orphan = harness.codec.issue_refresh_token(account_id, "never-issued", 600)

    with pytest.raises(AuthError) as excinfo:
        harness.service.refresh_access_token(orphan)

    assert excinfo.value.kind is ErrorKind.UNAUTHENTICATED
    assert excinfo.value.reason == "NOT_FOUND"


def test_refresh_rejects_subject_that_does_not_own_the_record(harness):
    register_and_verify(harness)
    bundle = harness.service.login("a@x.com", PASSWORD)
    jti = harness.codec.validate(bundle.refresh_token).jti
    forged = harness.codec.issue_refresh_token("someone-else", jti, 600)

    with pytest.raises(AuthError) as excinfo:
        harness.service.refresh_access_token(forged)

    assert excinfo.value.reason == "INVALID_REFRESH"


def test_refresh_rejects_expired_ledger_record(harness):
    account_id = register_and_verify(harness)
    bundle = harness.service.login("a@x.com", PASSWORD)
    jti = harness.codec.validate(bundle.refresh_token).jti
    harness.clock.advance(harness.settings.refresh_ttl_seconds + 1)
    # envelope still valid, ledger record expired
    long_lived = harness.codec.issue_refresh_token(account_id, jti, 600)

    with pytest.raises(AuthError) as excinfo:
        harness.service.refresh_access_token(long_lived)

    assert excinfo.value.reason == "REVOKED_OR_EXPIRED"


def test_refresh_with_expired_envelope_is_invalid(harness):
    register_and_verify(harness)
    bundle = harness.service.login("a@x.com", PASSWORD)
    harness.clock.advance(harness.settings.refresh_ttl_seconds)

    with pytest.raises(AuthError) as excinfo:
        harness.service.refresh_access_token(bundle.refresh_token)

    assert excinfo.value.reason == "INVALID_REFRESH"


# -- single-use tokens ------------------------------------------------------------


@pytest.mark.parametrize("purpose", [TokenPurpose.VERIFY, TokenPurpose.RESET])
def test_reissuing_single_use_token_keeps_exactly_one_live_token(harness, purpose):
    _register(harness)
    issue = (
        harness.service.send_verification_email
        if purpose is TokenPurpose.VERIFY
        else harness.service.request_password_reset
    )

    issue("a@x.com")
    issue("A@x.com")
    second_code = harness.mailer.last_code("a@x.com")

    [live] = _live_tokens(harness, "a@x.com", purpose)
    assert live.token == second_code
    assert len(second_code) == 8
    assert len(harness.mailer.sent) == 2


def test_superseded_verification_code_is_rejected(harness):
    _register(harness)
    harness.service.send_verification_email("a@x.com")
    first_code = harness.mailer.last_code("a@x.com")
    harness.service.send_verification_email("a@x.com")
    second_code = harness.mailer.last_code("a@x.com")
    assert first_code != second_code

    with pytest.raises(AuthError) as excinfo:
        harness.service.verify_email("a@x.com", first_code)

    assert excinfo.value.reason == "INVALID_CODE"
    harness.service.verify_email("a@x.com", second_code)


def test_verify_and_reset_tokens_are_independent(harness):
    _register(harness)
    harness.service.send_verification_email("a@x.com")
    harness.service.request_password_reset("a@x.com")

    assert len(_live_tokens(harness, "a@x.com", TokenPurpose.VERIFY)) == 1
    assert len(_live_tokens(harness, "a@x.com", TokenPurpose.RESET)) == 1


def test_single_use_issuance_does_not_require_an_account(harness):
    harness.service.send_verification_email("ghost@x.com")
    harness.service.send_verification_email("Ghost@x.com")
    harness.service.request_password_reset("ghost@x.com")

    assert len(_live_tokens(harness, "ghost@x.com", TokenPurpose.VERIFY)) == 1
    assert len(_live_tokens(harness, "ghost@x.com", TokenPurpose.RESET)) == 1
    assert [m.to_email for m in harness.mailer.sent] == ["ghost@x.com"] * 3


def test_mail_failure_does_not_surface_to_caller(harness):
    class BrokenMailer:
        def send(self, to_email, subject, body):
            raise OSError("smtp unreachable")

    _register(harness)
    harness.service._mailer = BrokenMailer()

    harness.service.send_verification_email("a@x.com")

    assert len(_live_tokens(harness, "a@x.com", TokenPurpose.VERIFY)) == 1


def test_verify_email_activates_account_and_consumes_token(harness):
    profile = _register(harness)
    harness.service.send_verification_email("a@x.com")

    harness.service.verify_email("A@X.com", harness.mailer.last_code("a@x.com"))

    with harness.store.transaction() as session:
        account = session.accounts.find_by_id(profile.account_id)
    assert account.status is AccountStatus.ACTIVE
    assert account.email_verified_at == harness.clock.now
    assert _live_tokens(harness, "a@x.com", TokenPurpose.VERIFY) == []


def test_verify_email_rejects_missing_and_mismatched_codes(harness):
    _register(harness)

    with pytest.raises(AuthError) as missing:
        harness.service.verify_email("a@x.com", "whatever")
    harness.service.send_verification_email("a@x.com")
    with pytest.raises(AuthError) as mismatch:
        harness.service.verify_email("a@x.com", "wrong-code")

    assert missing.value.reason == mismatch.value.reason == "INVALID_CODE"
    assert missing.value.kind is ErrorKind.UNAUTHENTICATED
    # a wrong guess does not burn the live token
    assert len(_live_tokens(harness, "a@x.com", TokenPurpose.VERIFY)) == 1


def test_expired_code_fails_even_when_correct_and_is_removed(harness):
    _register(harness)
    harness.service.send_verification_email("a@x.com")
    code = harness.mailer.last_code("a@x.com")
    harness.clock.advance(harness.settings.single_use_ttl_seconds)

    with pytest.raises(AuthError) as excinfo:
        harness.service.verify_email("a@x.com", code)

    assert excinfo.value.reason == "EXPIRED_CODE"
    assert _live_tokens(harness, "a@x.com", TokenPurpose.VERIFY) == []
    with pytest.raises(AuthError) as again:
        harness.service.verify_email("a@x.com", code)
    assert again.value.reason == "INVALID_CODE"


def test_scenario_d_password_reset_replaces_credentials(harness):
    register_and_verify(harness)
    harness.service.request_password_reset("a@x.com")
    code = harness.mailer.last_code("a@x.com")

    harness.service.perform_password_reset("a@x.com", code, "newpw123")

    with pytest.raises(AuthError) as excinfo:
        harness.service.login("a@x.com", PASSWORD)
    assert excinfo.value.reason == "INVALID_CREDENTIALS"
    assert harness.service.login("a@x.com", "newpw123").access_token
    assert _live_tokens(harness, "a@x.com", TokenPurpose.RESET) == []


def test_password_reset_rejects_weak_password_without_consuming_token(harness):
    _register(harness)
    harness.service.request_password_reset("a@x.com")
    code = harness.mailer.last_code("a@x.com")

    with pytest.raises(AuthError) as excinfo:
        harness.service.perform_password_reset("a@x.com", code, "short")

    assert excinfo.value.kind is ErrorKind.VALIDATION
    assert len(_live_tokens(harness, "a@x.com", TokenPurpose.RESET)) == 1


def test_expired_reset_token_is_removed(harness):
    _register(harness)
    harness.service.request_password_reset("a@x.com")
    code = harness.mailer.last_code("a@x.com")
    harness.clock.advance(harness.settings.single_use_ttl_seconds + 5)

    with pytest.raises(AuthError) as excinfo:
        harness.service.perform_password_reset("a@x.com", code, "newpw123")

    assert excinfo.value.reason == "EXPIRED_CODE"
    assert str(excinfo.value) == "Password reset token expired"
    assert _live_tokens(harness, "a@x.com", TokenPurpose.RESET) == []


# -- profile and bearer authentication ---------------------------------------------


def test_authenticate_accepts_access_tokens_only(harness):
    account_id = register_and_verify(harness)
    bundle = harness.service.login("a@x.com", PASSWORD)

    principal = harness.service.authenticate(bundle.access_token)

    assert principal.account_id == account_id
    assert principal.roles == ("CUSTOMER",)
    with pytest.raises(AuthError) as excinfo:
        harness.service.authenticate(bundle.refresh_token)
    assert excinfo.value.reason == "INVALID_TOKEN"


def test_update_profile_changes_display_name(harness):
    account_id = register_and_verify(harness)
    harness.clock.advance(10)

    profile = harness.service.update_profile(account_id, display_name="  Alice ")

    assert profile.display_name == "Alice"
    assert harness.service.get_profile(account_id).display_name == "Alice"


def test_profile_of_unknown_account_is_not_found(harness):
    with pytest.raises(AuthError) as excinfo:
        harness.service.get_profile("missing")
    assert excinfo.value.kind is ErrorKind.NOT_FOUND

    with pytest.raises(AuthError):
        harness.service.update_profile("missing", display_name="x")
