"""Authentication service orchestrating credentials, token rotation and single-use codes."""

from __future__ import annotations

import hmac
import logging
import re
import uuid
from enum import Enum
from typing import Callable

from .account import Account, AccountStatus, Role, normalize_email
from .contracts import AccountProfile, Principal, RegisterAccountInput, TokenBundle
from .tokens import TokenPurpose, new_refresh_record, new_single_use_token
from ..config import Settings
from ..context import RequestContext, mask_email
from ..errors import conflict, not_found, unauthenticated, validation_error
from ..events import AccountCreated, AccountCreatedPayload, EventPublisher
from ..mail import Mailer
from ..security.passwords import PasswordHasher
from ..security.tokens import (
    ACCESS_TOKEN_TYPE,
    REFRESH_TOKEN_TYPE,
    Clock,
    TokenCodec,
    generate_code,
    generate_jti,
    utc_now,
)
from ..storage.errors import DuplicateEmailError
from ..storage.protocols import Store, StoreSession

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_INVALID_CREDENTIALS = "Invalid credentials"


class _CodeCheck(Enum):
    MISSING = "missing"
    EXPIRED = "expired"
    MISMATCH = "mismatch"
    ACCEPTED = "accepted"


_SINGLE_USE_MAIL = {
    TokenPurpose.VERIFY: ("Verify your account", "Your verification code: {code}"),
    TokenPurpose.RESET: ("Password reset", "Your password reset token: {code}"),
}

_SINGLE_USE_ERRORS = {
    TokenPurpose.VERIFY: ("Invalid verification code", "Verification code expired"),
    TokenPurpose.RESET: ("Invalid password reset token", "Password reset token expired"),
}


class AuthService:
    """Account registration, login, refresh rotation, email verification and password reset.

    Every multi-step store mutation runs inside one ``store.transaction()``
    scope. Mail and events are dispatched only after that scope commits and
    their failures are logged rather than raised.
    """

    def __init__(
        self,
        store: Store,
        *,
        codec: TokenCodec,
        hasher: PasswordHasher,
        mailer: Mailer,
        publisher: EventPublisher,
        settings: Settings,
        clock: Clock = utc_now,
    ) -> None:
        """Store dependencies used to orchestrate persistence and token issuance."""
        self._store = store
        self._codec = codec
        self._hasher = hasher
        self._mailer = mailer
        self._publisher = publisher
        self._settings = settings
        self._clock = clock
        self._dummy_hash: str | None = None

    # -- registration -----------------------------------------------------------

    def register(self, payload: RegisterAccountInput, context: RequestContext | None = None) -> AccountProfile:
        """Create a PENDING account carrying the default role."""
        ctx = context or RequestContext()
        email = normalize_email(payload.email)
        display_name = payload.display_name.strip()
        if not _EMAIL_RE.match(email):
            raise validation_error("INVALID_EMAIL", "Email address is not valid")
        if not display_name:
            raise validation_error("INVALID_NAME", "Name must not be blank")
        self._check_password(payload.password)
        password_hash = self._hasher.hash(payload.password)

        with self._store.transaction() as session:
            if session.accounts.exists_by_email(email):
                raise conflict("EMAIL_TAKEN", "Email already registered")
            role = self._default_role(session)
            now = self._clock()
            account = Account(
                account_id=str(uuid.uuid4()),
                email=email,
                password_hash=password_hash,
                display_name=display_name,
                status=AccountStatus.PENDING,
                created_at=now,
                updated_at=now,
                roles=[role.code],
            )
            try:
                session.accounts.save(account)
            except DuplicateEmailError as exc:
                raise conflict("EMAIL_TAKEN", "Email already registered") from exc

        logger.info(
            "account registered id=%s email=%s",
            account.account_id,
            mask_email(email),
            extra=ctx.with_account(account.account_id).log_extra(),
        )
        self._publish_created(account, ctx)
        return AccountProfile.from_account(account)

    def _default_role(self, session: StoreSession) -> Role:
        code = self._settings.default_role_code
        role = session.accounts.find_role_by_code(code)
        if role is not None:
            return role
        # save_role hands back the existing row when another registration won the race
        return session.accounts.save_role(
            Role(role_id=str(uuid.uuid4()), code=code, name=self._settings.default_role_name)
        )

    # -- login and refresh ------------------------------------------------------

    def login(self, email: str, password: str, context: RequestContext | None = None) -> TokenBundle:
        """Check credentials and issue an access/refresh pair for an ACTIVE account."""
        ctx = context or RequestContext()
        normalized = normalize_email(email)
        with self._store.transaction() as session:
            account = session.accounts.find_by_email(normalized)

        if account is None:
            # hash once so an unknown email costs the same as a wrong password
            self._hasher.matches(password, self._placeholder_hash())
            logger.info("login rejected for %s", mask_email(normalized), extra=ctx.log_extra())
            raise unauthenticated("INVALID_CREDENTIALS", _INVALID_CREDENTIALS)
        if not self._hasher.matches(password, account.password_hash):
            logger.info("login rejected for %s", mask_email(normalized), extra=ctx.log_extra())
            raise unauthenticated("INVALID_CREDENTIALS", _INVALID_CREDENTIALS)
        if not account.is_active:
            raise unauthenticated(
                "ACCOUNT_NOT_ACTIVE",
                "Account not active. Please verify your email before logging in.",
            )

        jti = generate_jti()
        with self._store.transaction() as session:
            session.ledger.insert(
                new_refresh_record(
                    account_id=account.account_id,
                    jti=jti,
                    now=self._clock(),
                    ttl_seconds=self._settings.refresh_ttl_seconds,
                )
            )

        logger.info("login succeeded", extra=ctx.with_account(account.account_id).log_extra())
        return self._bundle(account, jti)

    def refresh_access_token(self, refresh_token: str, context: RequestContext | None = None) -> TokenBundle:
        """Exchange a refresh token for a new pair, revoking and linking the presented one.

        The ledger lookup, the revoke-and-link update and the insert of the
        successor record share one transaction with the record row locked, so
        concurrent rotations of the same token cannot both succeed. Replaying
        an already-rotated token fails on its own revoked record; descendants
        are left untouched.
        """
        ctx = context or RequestContext()
        claims = self._codec.validate(refresh_token)
        if claims is None or claims.token_type != REFRESH_TOKEN_TYPE or not claims.jti:
            raise unauthenticated("INVALID_REFRESH", "Invalid refresh token")

        new_jti = generate_jti()
        with self._store.transaction() as session:
            record = session.ledger.find_by_jti(claims.jti, for_update=True)
            if record is None:
                raise unauthenticated("NOT_FOUND", "Refresh token not found or already used")
            if record.account_id != claims.subject:
                raise unauthenticated("INVALID_REFRESH", "Invalid refresh token")
            now = self._clock()
            if record.revoked or record.is_expired(now):
                logger.warning(
                    "stale refresh token presented jti=%s revoked=%s",
                    record.jti,
                    record.revoked,
                    extra=ctx.with_account(record.account_id).log_extra(),
                )
                raise unauthenticated("REVOKED_OR_EXPIRED", "Refresh token expired or revoked")

            account = session.accounts.find_by_id(record.account_id)
            if account is None:
                raise not_found("ACCOUNT_NOT_FOUND", "Account not found")

            if not session.ledger.mark_rotated(record.jti, new_jti):
                raise unauthenticated("REVOKED_OR_EXPIRED", "Refresh token expired or revoked")
            session.ledger.insert(
                new_refresh_record(
                    account_id=account.account_id,
                    jti=new_jti,
                    now=now,
                    ttl_seconds=self._settings.refresh_ttl_seconds,
                )
            )

        logger.info(
            "refresh token rotated previous_jti=%s",
            record.jti,
            extra=ctx.with_account(account.account_id).log_extra(),
        )
        return self._bundle(account, new_jti)

    def authenticate(self, access_token: str) -> Principal:
        """Resolve a bearer access token into the calling principal."""
        claims = self._codec.validate(access_token)
        if claims is None or claims.token_type != ACCESS_TOKEN_TYPE:
            raise unauthenticated("INVALID_TOKEN", "Invalid or expired access token")
        return Principal(account_id=claims.subject, roles=tuple(claims.roles))

    def _bundle(self, account: Account, jti: str) -> TokenBundle:
        access_token = self._codec.issue_access_token(
            account.account_id, account.roles, self._settings.jwt_ttl_seconds
        )
        refresh_token = self._codec.issue_refresh_token(
            account.account_id, jti, self._settings.refresh_ttl_seconds
        )
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._settings.jwt_ttl_seconds,
        )

    # -- single-use tokens ------------------------------------------------------

    def send_verification_email(self, email: str, context: RequestContext | None = None) -> None:
        """Issue a fresh VERIFY code for ``email`` and mail it."""
        self._issue_single_use(email, TokenPurpose.VERIFY, context or RequestContext())

    def request_password_reset(self, email: str, context: RequestContext | None = None) -> None:
        """Issue a fresh RESET code for ``email`` and mail it."""
        self._issue_single_use(email, TokenPurpose.RESET, context or RequestContext())

    def verify_email(self, email: str, code: str, context: RequestContext | None = None) -> None:
        """Consume a VERIFY code and activate the account."""
        ctx = context or RequestContext()

        def activate(account: Account) -> None:
            now = self._clock()
            account.status = AccountStatus.ACTIVE
            if account.email_verified_at is None:
                account.email_verified_at = now
            account.updated_at = now

        self._consume_single_use(email, TokenPurpose.VERIFY, code, activate)
        logger.info("email verified for %s", mask_email(normalize_email(email)), extra=ctx.log_extra())

    def perform_password_reset(
        self,
        email: str,
        token: str,
        new_password: str,
        context: RequestContext | None = None,
    ) -> None:
        """Consume a RESET code and replace the account's password hash."""
        ctx = context or RequestContext()
        self._check_password(new_password)
        password_hash = self._hasher.hash(new_password)

        def change_password(account: Account) -> None:
            account.password_hash = password_hash
            account.updated_at = self._clock()

        self._consume_single_use(email, TokenPurpose.RESET, token, change_password)
        logger.info("password reset for %s", mask_email(normalize_email(email)), extra=ctx.log_extra())

    def _issue_single_use(self, email: str, purpose: TokenPurpose, ctx: RequestContext) -> None:
        normalized = normalize_email(email)
        code = generate_code(self._settings.single_use_code_length)
        with self._store.transaction() as session:
            session.tokens.replace(
                new_single_use_token(
                    email=normalized,
                    token=code,
                    purpose=purpose,
                    now=self._clock(),
                    ttl_seconds=self._settings.single_use_ttl_seconds,
                )
            )

        subject, template = _SINGLE_USE_MAIL[purpose]
        try:
            self._mailer.send(normalized, subject, template.format(code=code))
        except Exception:
            logger.exception("mail dispatch failed for %s", mask_email(normalized), extra=ctx.log_extra())
            return
        logger.info("%s code dispatched to %s", purpose.value, mask_email(normalized), extra=ctx.log_extra())

    def _consume_single_use(
        self,
        email: str,
        purpose: TokenPurpose,
        code: str,
        apply: Callable[[Account], None],
    ) -> None:
        normalized = normalize_email(email)
        with self._store.transaction() as session:
            stored = session.tokens.find(normalized, purpose, for_update=True)
            if stored is None:
                outcome = _CodeCheck.MISSING
            elif stored.is_expired(self._clock()):
                # committed with the transaction so stale rows do not pile up
                session.tokens.delete(normalized, purpose)
                outcome = _CodeCheck.EXPIRED
            elif not hmac.compare_digest(stored.token.encode("utf-8"), (code or "").encode("utf-8")):
                outcome = _CodeCheck.MISMATCH
            else:
                account = session.accounts.find_by_email(normalized, for_update=True)
                if account is None:
                    raise not_found("ACCOUNT_NOT_FOUND", "Account not found")
                apply(account)
                session.accounts.save(account)
                session.tokens.delete(normalized, purpose)
                outcome = _CodeCheck.ACCEPTED

        if outcome is _CodeCheck.ACCEPTED:
            return
        invalid_message, expired_message = _SINGLE_USE_ERRORS[purpose]
        if outcome is _CodeCheck.EXPIRED:
            raise unauthenticated("EXPIRED_CODE", expired_message)
        raise unauthenticated("INVALID_CODE", invalid_message)

    # -- profile ----------------------------------------------------------------

    def get_profile(self, account_id: str) -> AccountProfile:
        with self._store.transaction() as session:
            account = session.accounts.find_by_id(account_id)
        if account is None:
            raise not_found("ACCOUNT_NOT_FOUND", "Account not found")
        return AccountProfile.from_account(account)

    def update_profile(
        self,
        account_id: str,
        *,
        display_name: str | None = None,
        context: RequestContext | None = None,
    ) -> AccountProfile:
        """Apply profile changes; ``None`` fields are left unchanged."""
        ctx = context or RequestContext(account_id=account_id)
        with self._store.transaction() as session:
            account = session.accounts.find_by_id(account_id, for_update=True)
            if account is None:
                raise not_found("ACCOUNT_NOT_FOUND", "Account not found")
            if display_name is not None:
                if not display_name.strip():
                    raise validation_error("INVALID_NAME", "Name must not be blank")
                account.display_name = display_name.strip()
                account.updated_at = self._clock()
                session.accounts.save(account)
        logger.info("profile updated", extra=ctx.with_account(account_id).log_extra())
        return AccountProfile.from_account(account)

    # -- helpers ----------------------------------------------------------------

    def _check_password(self, password: str) -> None:
        if len(password or "") < self._settings.password_min_length:
            raise validation_error(
                "WEAK_PASSWORD",
                f"Password must be at least {self._settings.password_min_length} characters",
            )

    def _placeholder_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(uuid.uuid4().hex)
        return self._dummy_hash

    def _publish_created(self, account: Account, ctx: RequestContext) -> None:
        event = AccountCreated(
            trace_id=ctx.request_id,
            payload=AccountCreatedPayload(
                account_id=account.account_id,
                email=account.email,
                created_at=account.created_at,
            ),
        )
        try:
            self._publisher.publish(event)
        except Exception:
            logger.exception("account created event not published", extra=ctx.log_extra())


