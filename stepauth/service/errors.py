from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(str, Enum):
    """How a caller is expected to react to a failure."""

    VALIDATION = "validation"  # caller error, never retried
    CHALLENGE_TERMINAL = "challenge_terminal"  # request a fresh code
    TRANSIENT_NETWORK = "transient_network"  # retry with backoff
    AUTH_LOST = "auth_lost"  # local credentials discarded, re-authenticate
    AUTHENTICATION = "authentication"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code, a stable error_code used
    in the response envelope, and the ErrorCategory that tells callers whether
    a retry makes sense:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    category: ErrorCategory = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.TRANSIENT_NETWORK


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    category = ErrorCategory.VALIDATION


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    category = ErrorCategory.AUTHENTICATION


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    category = ErrorCategory.AUTHENTICATION


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    category = ErrorCategory.VALIDATION


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation or a lost update race (409)."""
    status_code = 409
    error_code = "conflict"
    category = ErrorCategory.CONFLICT


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    category = ErrorCategory.RATE_LIMITED


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    category = ErrorCategory.SERVER


class ChallengeError(ServiceError):
    """A one-time code challenge can no longer succeed.

    The caller must request a fresh code; nothing inside the authority retries.
    """

    status_code = 400
    error_code = "otp_invalid"
    category = ErrorCategory.CHALLENGE_TERMINAL
    outcome: str = "INVALID_CODE"
    default_message = "invalid code"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or self.default_message, **kwargs)
        self.detail.setdefault("outcome", self.outcome)


class ChallengeNotFoundError(ChallengeError):
    error_code = "otp_not_found"
    outcome = "NOT_FOUND"
    default_message = "no active code for this request"


class ChallengeExpiredError(ChallengeError):
    error_code = "otp_expired"
    outcome = "EXPIRED"
    default_message = "code has expired"


class AttemptsExceededError(ChallengeError):
    error_code = "otp_attempts_exceeded"
    outcome = "ATTEMPTS_EXCEEDED"
    default_message = "maximum code attempts exceeded"


class InvalidCodeError(ChallengeError):
    error_code = "otp_invalid"
    outcome = "INVALID_CODE"
    default_message = "invalid code"


class TransientNetworkError(ServiceError):
    """An upstream call failed in a way that is safe to retry (503)."""
    status_code = 503
    error_code = "service_unavailable"
    category = ErrorCategory.TRANSIENT_NETWORK


class DeliveryError(TransientNetworkError):
    """A one-time code could not be delivered out-of-band.

    The challenge that was just issued stays active; ``challenge_id`` lets the
    caller ask for a resend.
    """

    error_code = "delivery_failed"

    def __init__(
        self,
        message: str,
        *,
        challenge_id: Optional[str] = None,
        retryable: bool = True,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.challenge_id = challenge_id
        self._retryable = retryable
        if challenge_id:
            self.detail.setdefault("challenge_id", challenge_id)

    @property
    def retryable(self) -> bool:
        return self._retryable


class TokenRejection(str, Enum):
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class TokenExchangeError(AuthenticationError):
    """A refresh token was refused by the issuer."""

    def __init__(self, reason: TokenRejection, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"refresh token {reason.value.lower()}",
            detail={"reason": reason.value},
        )
        self.reason = reason


class AuthLostError(AuthenticationError):
    """The client can no longer authenticate without a fresh login."""
    error_code = "auth_lost"
    category = ErrorCategory.AUTH_LOST


__all__ = [
    "ErrorCategory",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ChallengeError",
    "ChallengeNotFoundError",
    "ChallengeExpiredError",
    "AttemptsExceededError",
    "InvalidCodeError",
    "TransientNetworkError",
    "DeliveryError",
    "TokenRejection",
    "TokenExchangeError",
    "AuthLostError",
]
