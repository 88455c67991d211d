from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from stepauth.api.schemas import (
    ChallengeResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    OTPResendRequest,
    OTPVerifyRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    SignupRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from stepauth.logging import get_logger
from stepauth.service.errors import AuthenticationError
from stepauth.service.runtime import Runtime, check_rate_limit, get_runtime
from stepauth.storage.models import ChallengePurpose, TokenPair, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_RATE_WINDOW_SECONDS = 60


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = _RATE_WINDOW_SECONDS,
    *,
    response: Optional[Response] = None,
) -> None:
    """Raise a 429 envelope when ``key`` has used up its bucket."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        logger.info("rate_limited", key_prefix=key.split(":", 1)[0])
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": reset_seconds},
        )


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@dataclass
class AuthContext:
    user: User
    access_token: str


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    if not authorization:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise _http_error("unauthorized", "invalid authorization header", status_code=401)
    runtime = get_runtime()
    user = await runtime.auth.authenticate(token.strip())
    return AuthContext(user=user, access_token=token.strip())


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        user_id=pair.subject_id,
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_at=pair.access_expires_at,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: SignupRequest):
    """Create a new, unverified user account.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
    )
    user = await runtime.auth.register(body.email, body.password)
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id,
            email=user.email,
            created_at=user.created_at,
            is_verified=user.is_verified,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Check the password and send a one-time code to the account's email.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
        503: If the code could not be delivered (``details.challenge_id`` is set)
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"login:{body.email}", runtime.settings.login_rate_limit_per_minute
    )
    challenge = await runtime.auth.login(body.email, body.password)
    return Envelope(
        status="ok",
        data=ChallengeResponse(
            user_id=challenge.user_id,
            challenge_id=challenge.challenge_id,
            expires_at=challenge.expires_at,
        ),
    )


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(body: OTPVerifyRequest):
    """Exchange a valid verification code for an access/refresh token pair."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:{body.user_id}",
        runtime.settings.otp_verify_rate_limit_per_minute,
    )
    pair = await runtime.auth.verify_login(body.user_id, body.code)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/otp/resend", response_model=Envelope, tags=["auth"])
async def resend_otp(body: OTPResendRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:issue:{body.email}",
        runtime.settings.otp_issue_rate_limit_per_minute,
    )
    await runtime.auth.resend_code(body.email, ChallengePurpose(body.purpose))
    # Same answer whether or not the email is registered
    return Envelope(
        status="ok",
        data=MessageResponse(message="if the account exists, a new code was sent"),
    )


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:issue:{body.email}",
        runtime.settings.otp_issue_rate_limit_per_minute,
    )
    await runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(message="if the account exists, a reset code was sent"),
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    """Set a new password with a PASSWORD_RESET code. Existing refresh tokens stop working."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:verify:reset:{body.email}",
        runtime.settings.otp_verify_rate_limit_per_minute,
    )
    await runtime.auth.complete_password_reset(body.email, body.code, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password updated"))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_host(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
    )
    pair = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(principal.user.id, access_token=principal.access_token)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    user = principal.user
    if not user.is_verified:
        # Tokens are only minted after a verified code, so this is a stale record
        raise AuthenticationError("account not verified")
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id,
            email=user.email,
            created_at=user.created_at,
            is_verified=user.is_verified,
        ),
    )
