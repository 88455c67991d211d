"""Turn server response envelopes back into data or ``ServiceError`` instances."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Type

import httpx

from stepauth.service.errors import (
    AttemptsExceededError,
    AuthenticationError,
    AuthLostError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    ConflictError,
    DeliveryError,
    ForbiddenError,
    InvalidCodeError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    TokenExchangeError,
    TokenRejection,
    TransientNetworkError,
    ValidationError,
)

_CODE_TO_ERROR: Dict[str, Type[ServiceError]] = {
    "validation_error": ValidationError,
    "unauthorized": AuthenticationError,
    "forbidden": ForbiddenError,
    "not_found": NotFoundError,
    "conflict": ConflictError,
    "rate_limited": RateLimitedError,
    "server_error": ServerError,
    "service_unavailable": TransientNetworkError,
    "auth_lost": AuthLostError,
    "otp_not_found": ChallengeNotFoundError,
    "otp_expired": ChallengeExpiredError,
    "otp_attempts_exceeded": AttemptsExceededError,
    "otp_invalid": InvalidCodeError,
}


def parse_timestamp(raw: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting the trailing ``Z`` pydantic emits."""
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return datetime.fromisoformat(raw)


def _error_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    error = body.get("error") if isinstance(body, dict) else None
    return error if isinstance(error, dict) else {}


def error_from_response(response: httpx.Response) -> ServiceError:
    """Rebuild the server's error from a non-2xx envelope."""
    error = _error_body(response)
    code = error.get("code") or ""
    message = error.get("message") or f"HTTP {response.status_code}"
    details = error.get("details")
    detail = details if isinstance(details, dict) else {}

    if code == "delivery_failed":
        return DeliveryError(message, challenge_id=detail.get("challenge_id"))
    if code == "unauthorized" and detail.get("reason") in TokenRejection.__members__:
        return TokenExchangeError(TokenRejection(detail["reason"]), message)
    error_cls = _CODE_TO_ERROR.get(code)
    if error_cls is None:
        if response.status_code >= 500:
            return ServerError(message, status_code=response.status_code)
        error_cls = ServiceError
    return error_cls(message, status_code=response.status_code, detail=detail)


def unwrap(response: httpx.Response) -> Any:
    """Return ``data`` from a success envelope or raise the mapped error."""
    if response.is_success:
        body = response.json()
        return body.get("data") if isinstance(body, dict) else body
    raise error_from_response(response)
