from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional

OTP_MAX_ATTEMPTS = 3


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChallengePurpose(str, Enum):
    """What a one-time code authorizes. Codes never cross purposes."""

    VERIFICATION = "VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


class ConsumedReason(str, Enum):
    VERIFIED = "verified"
    EXPIRED = "expired"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    SUPERSEDED = "superseded"


@dataclass
class User:
    id: str
    email: str
    created_at: datetime = field(default_factory=utc_now)
    is_verified: bool = False
    meta: Dict | None = None


@dataclass
class OTPChallenge:
    id: str
    subject_id: str
    purpose: ChallengePurpose
    code_hash: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = OTP_MAX_ATTEMPTS
    consumed: bool = False
    consumed_reason: Optional[ConsumedReason] = None
    consumed_at: Optional[datetime] = None
    # Bumped on every write; stores only apply an update whose expected
    # version matches.
    version: int = 0

    @classmethod
    def new(
        cls,
        subject_id: str,
        purpose: ChallengePurpose,
        code_hash: str,
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> "OTPChallenge":
        created = now or utc_now()
        return cls(
            id=str(uuid.uuid4()),
            subject_id=subject_id,
            purpose=purpose,
            code_hash=code_hash,
            created_at=created,
            expires_at=created + ttl,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def with_update(
        self,
        *,
        attempts: int,
        consumed_reason: Optional[ConsumedReason],
        now: datetime,
    ) -> "OTPChallenge":
        """Return the record as it should look after a verify decision."""
        consumed = consumed_reason is not None
        return replace(
            self,
            attempts=attempts,
            consumed=consumed,
            consumed_reason=consumed_reason,
            consumed_at=now if consumed else None,
            version=self.version + 1,
        )


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    subject_id: str
    token_type: str = "bearer"
    access_expires_at: Optional[datetime] = None


@dataclass
class RefreshHead:
    """The only refresh token currently accepted for a subject."""

    subject_id: str
    jti: str
    expires_at: datetime
    rotated_at: datetime = field(default_factory=utc_now)
