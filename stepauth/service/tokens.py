from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from stepauth.config import Settings
from stepauth.logging import get_logger
from stepauth.service.errors import (
    AuthenticationError,
    TokenExchangeError,
    TokenRejection,
)
from stepauth.storage.models import RefreshHead, TokenPair, utc_now

logger = get_logger(__name__)


class RefreshHeadStore(Protocol):
    def get_refresh_head(self, subject_id: str) -> Optional[RefreshHead]:
        ...

    def set_refresh_head(self, head: RefreshHead) -> None:
        ...

    def rotate_refresh_head(
        self, subject_id: str, expected_jti: str, new_head: RefreshHead
    ) -> bool:
        ...

    def delete_refresh_head(self, subject_id: str) -> None:
        ...


class TokenService:
    """Mints and validates HS256 access/refresh token pairs.

    Each subject has one refresh head: the jti of the only refresh token the
    service will still exchange. Minting or exchanging moves the head, so any
    older refresh token for that subject is revoked.
    """

    def __init__(
        self,
        store: RefreshHeadStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload of a well-formed, correctly signed token for this issuer.

        Expiry is not checked here so callers can tell EXPIRED from INVALID.
        """
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        try:
            payload["exp"] = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            return None
        return payload

    def _expired(self, payload: dict[str, Any]) -> bool:
        return payload["exp"] <= int(self._clock().timestamp())

    def _build_pair(self, subject_id: str) -> tuple[TokenPair, RefreshHead]:
        now = self._clock()
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        refresh_jti = str(uuid.uuid4())
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject_id,
            "iat": int(now.timestamp()),
        }
        access_token = self._encode_jwt(
            {
                **base,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
                "exp": int(access_exp.timestamp()),
            }
        )
        refresh_token = self._encode_jwt(
            {
                **base,
                "token_type": "refresh",
                "jti": refresh_jti,
                "exp": int(refresh_exp.timestamp()),
            }
        )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            subject_id=subject_id,
            access_expires_at=datetime.fromtimestamp(
                int(access_exp.timestamp()), tz=timezone.utc
            ),
        )
        head = RefreshHead(
            subject_id=subject_id, jti=refresh_jti, expires_at=refresh_exp, rotated_at=now
        )
        return pair, head

    def mint(self, subject_id: str) -> TokenPair:
        """Issue a fresh pair; the new refresh token becomes the subject's head."""
        pair, head = self._build_pair(subject_id)
        self.store.set_refresh_head(head)
        logger.info("tokens_minted", subject_id=subject_id)
        return pair

    def exchange(self, refresh_token: str) -> TokenPair:
        payload = self._decode_jwt(refresh_token)
        if payload is None or payload.get("token_type") != "refresh":
            raise TokenExchangeError(TokenRejection.INVALID)
        subject_id = payload["sub"]
        if self._expired(payload):
            raise TokenExchangeError(TokenRejection.EXPIRED)
        head = self.store.get_refresh_head(subject_id)
        if head is None or head.jti != payload["jti"]:
            logger.warning("refresh_token_not_head", subject_id=subject_id)
            raise TokenExchangeError(TokenRejection.REVOKED)
        pair, new_head = self._build_pair(subject_id)
        if not self.store.rotate_refresh_head(subject_id, payload["jti"], new_head):
            # Someone else rotated this head first
            logger.warning("refresh_rotation_lost", subject_id=subject_id)
            raise TokenExchangeError(TokenRejection.REVOKED)
        logger.info("tokens_refreshed", subject_id=subject_id)
        return pair

    def decode_access(self, access_token: str) -> dict[str, Any]:
        payload = self._decode_jwt(access_token)
        if payload is None or payload.get("token_type") != "access":
            raise AuthenticationError("invalid access token")
        if self._expired(payload):
            raise AuthenticationError("access token expired", detail={"reason": "EXPIRED"})
        return payload

    def authenticate(self, access_token: str) -> str:
        return self.decode_access(access_token)["sub"]

    def revoke(self, subject_id: str) -> None:
        self.store.delete_refresh_head(subject_id)
        logger.info("refresh_head_revoked", subject_id=subject_id)
