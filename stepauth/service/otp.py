from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from stepauth.config import OTPHashScheme, Settings
from stepauth.logging import get_logger
from stepauth.service.errors import (
    AttemptsExceededError,
    ChallengeError,
    ChallengeExpiredError,
    ChallengeNotFoundError,
    ConflictError,
    InvalidCodeError,
    ValidationError,
)
from stepauth.storage.models import (
    OTP_MAX_ATTEMPTS,
    ChallengePurpose,
    ConsumedReason,
    OTPChallenge,
    utc_now,
)

logger = get_logger(__name__)

CODE_DIGITS = 6
_CODE_RE = re.compile(r"[0-9]{6}")
# Every lost compare-and-set means another verifier made progress on the same
# challenge, and a challenge accepts at most max_attempts + 1 writes.
_MAX_CAS_RETRIES = 8
_HMAC_PREFIX = "hmac-sha256"


class ChallengeStore(Protocol):
    def create_challenge(self, challenge: OTPChallenge) -> OTPChallenge:
        ...

    def get_challenge(self, challenge_id: str) -> Optional[OTPChallenge]:
        ...

    def get_active_challenge(
        self, subject_id: str, purpose: ChallengePurpose
    ) -> Optional[OTPChallenge]:
        ...

    def get_latest_challenge(
        self, subject_id: str, purpose: ChallengePurpose
    ) -> Optional[OTPChallenge]:
        ...

    def compare_and_set_challenge(
        self, updated: OTPChallenge, expected_version: int
    ) -> bool:
        ...


class VerifyOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    ATTEMPTS_EXCEEDED = "ATTEMPTS_EXCEEDED"
    INVALID_CODE = "INVALID_CODE"


@dataclass(frozen=True)
class IssuedChallenge:
    """Result of ``OTPAuthority.issue``. The plaintext code exists only here."""

    challenge_id: str
    plaintext_code: str
    expires_at: datetime

    def __repr__(self) -> str:
        return (
            f"IssuedChallenge(challenge_id={self.challenge_id!r}, "
            f"plaintext_code='******', expires_at={self.expires_at!r})"
        )


class CodeHasher:
    """One-way hashing for one-time codes.

    Stored hashes are self-describing, so a record written under one scheme
    still verifies after ``OTP_HASH_SCHEME`` changes.
    """

    def __init__(self, scheme: OTPHashScheme, pepper: bytes) -> None:
        self.scheme = OTPHashScheme(scheme)
        self._pepper = pepper
        # Codes carry ~20 bits of entropy; keep argon2 parameters light.
        self._argon = PasswordHasher(
            type=Type.ID, time_cost=2, memory_cost=19456, parallelism=1
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CodeHasher":
        if settings.otp_pepper:
            pepper = settings.otp_pepper.encode()
        else:
            pepper = hmac.new(
                settings.jwt_secret.encode(), b"stepauth-otp-pepper", hashlib.sha256
            ).digest()
        return cls(settings.otp_hash_scheme, pepper)

    def _mac(self, salt: str, code: str) -> str:
        return hmac.new(
            self._pepper, f"{salt}:{code}".encode(), hashlib.sha256
        ).hexdigest()

    def hash(self, code: str) -> str:
        if self.scheme is OTPHashScheme.ARGON2ID:
            return self._argon.hash(code)
        salt = secrets.token_hex(16)
        return f"{_HMAC_PREFIX}${salt}${self._mac(salt, code)}"

    def verify(self, code: str, stored_hash: str) -> bool:
        if stored_hash.startswith(f"{_HMAC_PREFIX}$"):
            try:
                _, salt, digest = stored_hash.split("$", 2)
            except ValueError:
                return False
            return hmac.compare_digest(self._mac(salt, code), digest)
        try:
            return self._argon.verify(stored_hash, code)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False


def generate_code() -> str:
    """Uniformly random zero-padded 6-digit code from the OS CSPRNG."""
    return str(secrets.randbelow(10**CODE_DIGITS)).zfill(CODE_DIGITS)


class OTPAuthority:
    """Issues and verifies one-time codes bound to a subject and a purpose.

    Invariants kept against the store:
    - at most one unconsumed challenge per (subject_id, purpose);
    - ``consumed`` only flips false -> true;
    - ``attempts`` only grows and never passes ``max_attempts``.

    Every verify decision is committed with a version compare-and-set; a
    verifier that loses the race re-reads and decides again, so two verifies
    cannot both succeed and concurrent failures are all counted.
    """

    def __init__(
        self,
        store: ChallengeStore,
        *,
        hasher: CodeHasher,
        ttl: timedelta = timedelta(minutes=2),
        max_attempts: int = OTP_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
        code_factory: Callable[[], str] = generate_code,
    ) -> None:
        if ttl <= timedelta(0):
            raise ValueError("challenge ttl must be positive")
        self.store = store
        self.hasher = hasher
        self.ttl = ttl
        self.max_attempts = max_attempts
        self._clock = clock
        self._code_factory = code_factory

    @classmethod
    def from_settings(
        cls, store: ChallengeStore, settings: Settings, **kwargs
    ) -> "OTPAuthority":
        return cls(
            store,
            hasher=CodeHasher.from_settings(settings),
            ttl=timedelta(minutes=settings.otp_ttl_minutes),
            **kwargs,
        )

    @property
    def ttl_minutes(self) -> int:
        return max(1, int(self.ttl.total_seconds() // 60))

    @staticmethod
    def _validate_subject(subject_id: str) -> str:
        if not isinstance(subject_id, str) or not subject_id.strip():
            raise ValidationError("subject_id is required", detail={"field": "subject_id"})
        return subject_id

    @staticmethod
    def _validate_purpose(purpose) -> ChallengePurpose:
        try:
            return ChallengePurpose(purpose)
        except ValueError:
            raise ValidationError(
                "unknown challenge purpose", detail={"field": "purpose"}
            ) from None

    @staticmethod
    def _validate_code(code: str) -> str:
        if not isinstance(code, str) or not _CODE_RE.fullmatch(code):
            raise ValidationError(
                "code must be exactly 6 digits", detail={"field": "code"}
            )
        return code

    def issue(self, subject_id: str, purpose: ChallengePurpose) -> IssuedChallenge:
        """Create a fresh challenge, superseding any live one for the same pair."""
        subject_id = self._validate_subject(subject_id)
        purpose = self._validate_purpose(purpose)
        code = self._code_factory()
        challenge = OTPChallenge.new(
            subject_id,
            purpose,
            self.hasher.hash(code),
            ttl=self.ttl,
            now=self._clock(),
        )
        challenge.max_attempts = self.max_attempts
        stored = self.store.create_challenge(challenge)
        logger.info(
            "otp_issued",
            subject_id=subject_id,
            purpose=purpose.value,
            challenge_id=stored.id,
            expires_at=stored.expires_at.isoformat(),
        )
        return IssuedChallenge(
            challenge_id=stored.id, plaintext_code=code, expires_at=stored.expires_at
        )

    def verify(
        self, subject_id: str, purpose: ChallengePurpose, submitted_code: str
    ) -> VerifyOutcome:
        """Check ``submitted_code`` against the live challenge.

        Returns ``VerifyOutcome.SUCCESS`` or raises a ``ChallengeError``
        subclass naming the terminal outcome.
        """
        subject_id = self._validate_subject(subject_id)
        purpose = self._validate_purpose(purpose)
        code = self._validate_code(submitted_code)

        for _ in range(_MAX_CAS_RETRIES):
            challenge = self.store.get_active_challenge(subject_id, purpose)
            if challenge is None:
                raise self._terminal_error(subject_id, purpose)

            now = self._clock()
            error: Optional[ChallengeError] = None
            if challenge.is_expired(now):
                updated = challenge.with_update(
                    attempts=challenge.attempts,
                    consumed_reason=ConsumedReason.EXPIRED,
                    now=now,
                )
                error = ChallengeExpiredError()
            elif challenge.attempts >= challenge.max_attempts:
                updated = challenge.with_update(
                    attempts=challenge.attempts,
                    consumed_reason=ConsumedReason.ATTEMPTS_EXCEEDED,
                    now=now,
                )
                error = AttemptsExceededError()
            elif self.hasher.verify(code, challenge.code_hash):
                updated = challenge.with_update(
                    attempts=challenge.attempts,
                    consumed_reason=ConsumedReason.VERIFIED,
                    now=now,
                )
            else:
                attempts = challenge.attempts + 1
                updated = challenge.with_update(
                    attempts=attempts,
                    consumed_reason=(
                        ConsumedReason.ATTEMPTS_EXCEEDED
                        if attempts >= challenge.max_attempts
                        else None
                    ),
                    now=now,
                )
                error = InvalidCodeError(
                    detail={
                        "attempts_remaining": max(0, challenge.max_attempts - attempts)
                    }
                )

            if not self.store.compare_and_set_challenge(updated, challenge.version):
                logger.debug(
                    "otp_verify_cas_retry",
                    subject_id=subject_id,
                    challenge_id=challenge.id,
                )
                continue

            if error is not None:
                logger.info(
                    "otp_verify_failed",
                    subject_id=subject_id,
                    purpose=purpose.value,
                    challenge_id=challenge.id,
                    outcome=error.outcome,
                    attempts=updated.attempts,
                )
                raise error
            logger.info(
                "otp_verified",
                subject_id=subject_id,
                purpose=purpose.value,
                challenge_id=challenge.id,
            )
            return VerifyOutcome.SUCCESS

        logger.warning(
            "otp_verify_contention", subject_id=subject_id, purpose=purpose.value
        )
        raise ConflictError("challenge is being modified concurrently; retry")

    def _terminal_error(
        self, subject_id: str, purpose: ChallengePurpose
    ) -> ChallengeError:
        latest = self.store.get_latest_challenge(subject_id, purpose)
        if latest is not None:
            if latest.consumed_reason is ConsumedReason.EXPIRED:
                return ChallengeExpiredError()
            if latest.consumed_reason is ConsumedReason.ATTEMPTS_EXCEEDED:
                return AttemptsExceededError()
        return ChallengeNotFoundError()

    def get_challenge(self, challenge_id: str) -> Optional[OTPChallenge]:
        return self.store.get_challenge(challenge_id)
