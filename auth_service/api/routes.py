"""HTTP route definitions for the authentication service."""

from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response, status
from fastapi.exception_handlers import http_exception_handler, request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import get_settings
from ..context import RequestContext, mask_email
from ..domain.account import AccountStatus, normalize_email
from ..domain.contracts import AccountProfile, Principal, RegisterAccountInput, TokenBundle
from ..domain.service import AuthService
from ..errors import AuthError, ErrorKind
from ..security.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from ..security.redis_rate_limiter import RedisSlidingWindowRateLimiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")

REQUEST_ID_HEADER = "X-Request-ID"

_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}

_TITLE_BY_KIND = {
    ErrorKind.VALIDATION: "Bad Request",
    ErrorKind.CONFLICT: "Conflict",
    ErrorKind.UNAUTHENTICATED: "Unauthorized",
    ErrorKind.NOT_FOUND: "Not Found",
}


class ProfileResponse(BaseModel):
    """Serialised representation of an `AccountProfile`."""

    id: str
    email: str
    name: str
    roles: list[str]
    status: AccountStatus

    @classmethod
    def from_domain(cls, profile: AccountProfile) -> "ProfileResponse":
        """Build a response model from the domain profile."""
        return cls(
            id=profile.account_id,
            email=profile.email,
            name=profile.display_name,
            roles=profile.roles,
            status=profile.status,
        )


class RegisterRequest(BaseModel):
    """Payload accepted when registering an account."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)
    name: str = Field(..., min_length=1, max_length=200)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


class RefreshTokenRequest(BaseModel):
    """Request body for exchanging refresh tokens for new access credentials."""

    refresh_token: str = Field(..., min_length=1)


class EmailRequest(BaseModel):
    """Body for endpoints that only need the target email (send code, request reset)."""

    email: EmailStr


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=1, max_length=64)


class PerformPasswordResetRequest(BaseModel):
    email: EmailStr
    token: str = Field(..., min_length=1, max_length=64)
    new_password: str = Field(..., min_length=1, max_length=128)


class UpdateProfileRequest(BaseModel):
    name: str | None = Field(default=None, max_length=200)


class TokenResponse(BaseModel):
    """Token issuance response containing the bearer and refresh tokens."""

    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int

    @classmethod
    def from_bundle(cls, bundle: TokenBundle) -> "TokenResponse":
        return cls(
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token,
            token_type=bundle.token_type,
            expires_in=bundle.expires_in,
        )


settings = get_settings()


def _build_rate_limiter() -> RateLimiter:
    """Instantiate the configured rate limiter backend, preferring Redis when available."""
    if settings.rate_limit_backend == "redis" and settings.redis_url:
        try:
            import redis

            client = redis.from_url(settings.redis_url)
            # ensure connectivity early to fail fast and fall back
            client.ping()
            logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
            return RedisSlidingWindowRateLimiter(
                client,
                max_requests=settings.rate_limit_requests,
                window_seconds=settings.rate_limit_window_seconds,
            )
        except Exception as exc:  # pragma: no cover - depends on a live redis
            logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)

    logger.info("rate limiter using in-memory backend")
    return SlidingWindowRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )


rate_limiter = _build_rate_limiter()
bearer_scheme = HTTPBearer(auto_error=False)


def get_service(request: Request) -> AuthService:
    """Resolve the `AuthService` stored on the FastAPI application state."""
    service: AuthService = request.app.state.auth_service
    return service


def get_context(
    request: Request,
    response: Response,
    request_id: str | None = Header(default=None, alias=REQUEST_ID_HEADER),
) -> RequestContext:
    """Build the per-request context, reusing the caller's request id when supplied."""
    context = RequestContext(request_id=request_id or uuid.uuid4().hex)
    request.state.request_id = context.request_id
    response.headers[REQUEST_ID_HEADER] = context.request_id
    return context


def _request_id(request: Request) -> str:
    """Return the id bound by `get_context`, falling back to the header or a fresh one."""
    request_id = getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)
    if not request_id:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
    return request_id


def get_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    service: AuthService = Depends(get_service),
) -> Principal:
    """Authenticate the bearer access token on the request."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return service.authenticate(credentials.credentials)


def _enforce_rate_limit(key: str) -> None:
    if not rate_limiter.allow(key):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="rate limited")


@router.post("/auth/register", response_model=ProfileResponse, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterRequest,
    service: AuthService = Depends(get_service),
    context: RequestContext = Depends(get_context),
) -> ProfileResponse:
    """Register a new account in PENDING state."""
    logger.info("register request for %s", mask_email(payload.email), extra=context.log_extra())
    profile = service.register(
        RegisterAccountInput(email=payload.email, password=payload.password, display_name=payload.name),
        context,
    )
    return ProfileResponse.from_domain(profile)


@router.post("/auth/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    service: AuthService = Depends(get_service),
    context: RequestContext = Depends(get_context),
) -> TokenResponse:
    """Exchange email and password for an access/refresh token pair."""
    rate_key = f"login:{normalize_email(payload.email)}"
    _enforce_rate_limit(rate_key)
    bundle = service.login(payload.email, payload.password, context)
    rate_limiter.reset(rate_key)
    return TokenResponse.from_bundle(bundle)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh_token(
    payload: RefreshTokenRequest,
    service: AuthService = Depends(get_service),
    context: RequestContext = Depends(get_context),
) -> TokenResponse:
    """Rotate a refresh token into a new token pair."""
    token_hash = hashlib.sha256(payload.refresh_token.encode("utf-8")).hexdigest()[:12]
    _enforce_rate_limit(f"token-refresh:{token_hash}")
    bundle = service.refresh_access_token(payload.refresh_token, context)
    return TokenResponse.from_bundle(bundle)


@router.post("/auth/verify/send", status_code=status.HTTP_202_ACCEPTED)
def send_verification(
    payload: EmailRequest,
    service: AuthService = Depends(get_service),
    context: RequestContext = Depends(get_context),
) -> Response:
    """Send a fresh email verification code."""
    _enforce_rate_limit(f"verify-send:{normalize_email(payload.email)}")
    service.send_verification_email(payload.email, context)
    return Response(status_code=status.HTTP_202_ACCEPTED, headers={REQUEST_ID_HEADER: context.request_id})


@router.post("/auth/verify", status_code=status.HTTP_204_NO_CONTENT)
def verify_email(
    payload: VerifyEmailRequest,
    service: AuthService = Depends(get_service),
    context: RequestContext = Depends(get_context),
) -> Response:
    """Verify an email address with a previously sent code."""
    _enforce_rate_limit(f"verify:{normalize_email(payload.email)}")
    service.verify_email(payload.email, payload.code, context)
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers={REQUEST_ID_HEADER: context.request_id})


@router.post("/auth/password/reset", status_code=status.HTTP_202_ACCEPTED)
def request_password_reset(
    payload: EmailRequest,
    service: AuthService = Depends(get_service),
    context: RequestContext = Depends(get_context),
) -> Response:
    """Mail a password reset token if the account exists."""
    _enforce_rate_limit(f"reset-send:{normalize_email(payload.email)}")
    service.request_password_reset(payload.email, context)
    return Response(status_code=status.HTTP_202_ACCEPTED, headers={REQUEST_ID_HEADER: context.request_id})


@router.post("/auth/password/reset/perform", status_code=status.HTTP_204_NO_CONTENT)
def perform_password_reset(
    payload: PerformPasswordResetRequest,
    service: AuthService = Depends(get_service),
    context: RequestContext = Depends(get_context),
) -> Response:
    """Set a new password using a reset token."""
    _enforce_rate_limit(f"reset:{normalize_email(payload.email)}")
    service.perform_password_reset(payload.email, payload.token, payload.new_password, context)
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers={REQUEST_ID_HEADER: context.request_id})


@router.get("/users/me", response_model=ProfileResponse)
def get_me(
    context: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_service),
) -> ProfileResponse:
    """Return the caller's profile."""
    profile = service.get_profile(principal.account_id)
    logger.debug("profile read", extra=context.with_account(principal.account_id).log_extra())
    return ProfileResponse.from_domain(profile)


@router.put("/users/me", response_model=ProfileResponse)
def update_me(
    payload: UpdateProfileRequest,
    context: RequestContext = Depends(get_context),
    principal: Principal = Depends(get_principal),
    service: AuthService = Depends(get_service),
) -> ProfileResponse:
    """Update the caller's display name."""
    profile = service.update_profile(
        principal.account_id,
        display_name=payload.name,
        context=context.with_account(principal.account_id),
    )
    return ProfileResponse.from_domain(profile)


def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render an `AuthError` as a problem document."""
    status_code = _STATUS_BY_KIND[exc.kind]
    request_id = _request_id(request)
    extra = {"request_id": request_id}
    if exc.kind is ErrorKind.UNAUTHENTICATED:
        logger.info("request rejected reason=%s path=%s", exc.reason, request.url.path, extra=extra)
    else:
        logger.info(
            "bad request reason=%s path=%s: %s", exc.reason, request.url.path, exc.message, extra=extra
        )
    return JSONResponse(
        status_code=status_code,
        content={
            "type": "about:blank",
            "title": _TITLE_BY_KIND[exc.kind],
            "status": status_code,
            "detail": exc.message,
            "reason": exc.reason,
            "instance": request.url.path,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        headers={REQUEST_ID_HEADER: request_id},
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    """Default FastAPI rendering plus the request id header."""
    request_id = _request_id(request)
    if exc.status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        logger.warning("rate limited path=%s", request.url.path, extra={"request_id": request_id})
    response = await http_exception_handler(request, exc)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def validation_error_handler(request: Request, exc: RequestValidationError) -> Response:
    response = await request_validation_exception_handler(request, exc)
    response.headers[REQUEST_ID_HEADER] = _request_id(request)
    return response


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AuthError, auth_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
