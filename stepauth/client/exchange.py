from __future__ import annotations

from typing import Protocol

import httpx

from stepauth.client.envelope import error_from_response, parse_timestamp
from stepauth.logging import get_logger
from stepauth.service.errors import (
    TokenExchangeError,
    TokenRejection,
    TransientNetworkError,
)
from stepauth.storage.models import TokenPair

logger = get_logger(__name__)


class TokenExchanger(Protocol):
    async def exchange(self, refresh_token: str) -> TokenPair:
        """Trade a refresh token for a new pair.

        Raises ``TokenExchangeError`` when the token is refused and
        ``TransientNetworkError`` when the answer never arrived.
        """
        ...


class HttpTokenExchanger:
    """Client side of ``POST /v1/auth/refresh``."""

    def __init__(self, client: httpx.AsyncClient, path: str = "/v1/auth/refresh") -> None:
        self.client = client
        self.path = path

    async def exchange(self, refresh_token: str) -> TokenPair:
        try:
            response = await self.client.post(
                self.path, json={"refresh_token": refresh_token}
            )
        except httpx.TransportError as exc:
            logger.warning("refresh_exchange_transport_error", error_type=type(exc).__name__)
            raise TransientNetworkError(f"refresh exchange failed: {type(exc).__name__}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientNetworkError(
                f"refresh exchange returned {response.status_code}",
                status_code=response.status_code,
            )
        if not response.is_success:
            error = error_from_response(response)
            if isinstance(error, TokenExchangeError):
                raise error
            # Any other refusal means this refresh token will never work
            raise TokenExchangeError(TokenRejection.INVALID, error.message)

        try:
            return self.pair_from_data(response.json().get("data"))
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise TransientNetworkError("malformed refresh response") from exc

    @staticmethod
    def pair_from_data(data: dict) -> TokenPair:
        """Build a ``TokenPair`` from a ``TokenResponse`` payload."""
        expires = data.get("expires_at")
        return TokenPair(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            subject_id=data["user_id"],
            token_type=data.get("token_type", "bearer"),
            access_expires_at=parse_timestamp(expires) if expires else None,
        )
