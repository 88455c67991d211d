from __future__ import annotations

import asyncio
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from stepauth.config import Settings
from stepauth.logging import get_logger, redact_email
from stepauth.service.errors import (
    AuthenticationError,
    ChallengeNotFoundError,
    ConflictError,
    DeliveryError,
    ForbiddenError,
    ValidationError,
)
from stepauth.service.notifier import Notifier
from stepauth.service.otp import IssuedChallenge, OTPAuthority
from stepauth.service.tokens import TokenService
from stepauth.storage.errors import ConstraintViolation
from stepauth.storage.models import ChallengePurpose, TokenPair, User
from stepauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class AuthStore(Protocol):
    def create_user(self, email: str, *, meta: Optional[dict] = None) -> User:
        ...

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def mark_user_verified(self, user_id: str) -> None:
        ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        ...


@dataclass(frozen=True)
class LoginChallenge:
    """Returned by a successful password step; the code went out-of-band."""

    user_id: str
    challenge_id: str
    expires_at: datetime


class AuthService:
    """Password step, OTP step and token lifecycle wired together."""

    def __init__(
        self,
        store: AuthStore,
        otp: OTPAuthority,
        tokens: TokenService,
        notifier: Notifier,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.otp = otp
        self.tokens = tokens
        self.notifier = notifier
        self.settings = settings
        self.cache = cache
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Used to spend comparable time on unknown-email logins
        self._dummy_hash = self._pwd_hasher.hash("stepauth-timing-equalizer")
        self._state_lock = threading.Lock()
        # jti -> expiry timestamp, used when Redis is not configured
        self._denylisted_access: dict[str, int] = {}
        self.logger = logger

    # -- passwords -----------------------------------------------------------

    @staticmethod
    def _normalize_email(email: str) -> str:
        normalized = (email or "").strip().lower()
        if not _EMAIL_RE.match(normalized) or len(normalized) > 254:
            raise ValidationError("invalid email address", detail={"field": "email"})
        return normalized

    @staticmethod
    def _validate_new_password(password: str) -> None:
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # -- delivery ------------------------------------------------------------

    async def _deliver(self, destination: str, issued: IssuedChallenge) -> None:
        """Send the code, retrying transient failures with exponential backoff.

        The issued challenge stays active if delivery finally fails.
        """
        max_attempts = max(1, self.settings.notifier_max_attempts)
        for attempt in range(1, max_attempts + 1):
            try:
                await asyncio.to_thread(
                    self.notifier.send,
                    destination,
                    issued.plaintext_code,
                    self.otp.ttl_minutes,
                )
                return
            except DeliveryError as exc:
                if not exc.retryable or attempt == max_attempts:
                    self.logger.error(
                        "otp_delivery_failed",
                        to=redact_email(destination),
                        challenge_id=issued.challenge_id,
                        attempts=attempt,
                        retryable=exc.retryable,
                        error=exc.message,
                    )
                    raise DeliveryError(
                        "could not deliver verification code",
                        challenge_id=issued.challenge_id,
                        retryable=exc.retryable,
                    ) from exc
                delay = self.settings.notifier_backoff_seconds * (2 ** (attempt - 1))
                self.logger.warning(
                    "otp_delivery_retry",
                    challenge_id=issued.challenge_id,
                    attempt=attempt,
                    delay_seconds=delay,
                )
                await asyncio.sleep(delay)

    async def _issue_and_deliver(
        self, user: User, purpose: ChallengePurpose
    ) -> IssuedChallenge:
        issued = self.otp.issue(user.id, purpose)
        await self._deliver(user.email, issued)
        return issued

    # -- flows ---------------------------------------------------------------

    async def register(self, email: str, password: str) -> User:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        normalized = self._normalize_email(email)
        self._validate_new_password(password)
        try:
            user = self.store.create_user(normalized)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.save_password(user.id, password)
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> LoginChallenge:
        normalized = self._normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            try:
                self._pwd_hasher.verify(self._dummy_hash, password or "")
            except VerificationError:
                pass
            self.logger.info("login_failed", reason="unknown_user")
            raise AuthenticationError("invalid credentials")
        if not self.verify_password(user.id, password or ""):
            self.logger.info("login_failed", user_id=user.id, reason="bad_password")
            raise AuthenticationError("invalid credentials")
        issued = await self._issue_and_deliver(user, ChallengePurpose.VERIFICATION)
        return LoginChallenge(
            user_id=user.id,
            challenge_id=issued.challenge_id,
            expires_at=issued.expires_at,
        )

    async def resend_code(
        self, email: str, purpose: ChallengePurpose = ChallengePurpose.VERIFICATION
    ) -> Optional[LoginChallenge]:
        """Re-issue a code; unknown emails are a silent no-op."""
        normalized = self._normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self.logger.info("otp_resend_unknown_email")
            return None
        issued = await self._issue_and_deliver(user, ChallengePurpose(purpose))
        return LoginChallenge(
            user_id=user.id,
            challenge_id=issued.challenge_id,
            expires_at=issued.expires_at,
        )

    async def verify_login(self, user_id: str, code: str) -> TokenPair:
        self.otp.verify(user_id, ChallengePurpose.VERIFICATION, code)
        user = self.store.get_user(user_id)
        if user is None:
            raise AuthenticationError("user no longer exists")
        if not user.is_verified:
            self.store.mark_user_verified(user.id)
            self.logger.info("user_verified", user_id=user.id)
        return self.tokens.mint(user.id)

    async def request_password_reset(self, email: str) -> None:
        normalized = self._normalize_email(email)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            self.logger.info("password_reset_unknown_email")
            return
        await self._issue_and_deliver(user, ChallengePurpose.PASSWORD_RESET)
        self.logger.info("password_reset_requested", user_id=user.id)

    async def complete_password_reset(
        self, email: str, code: str, new_password: str
    ) -> None:
        normalized = self._normalize_email(email)
        self._validate_new_password(new_password)
        user = self.store.get_user_by_email(normalized)
        if user is None:
            # Same outcome as a missing challenge so emails cannot be probed
            raise ChallengeNotFoundError()
        self.otp.verify(user.id, ChallengePurpose.PASSWORD_RESET, code)
        self.save_password(user.id, new_password)
        self.tokens.revoke(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    async def refresh(self, refresh_token: str) -> TokenPair:
        return self.tokens.exchange(refresh_token)

    # -- access tokens -------------------------------------------------------

    async def _denylist_access(self, payload: dict[str, Any]) -> None:
        ttl = max(0, int(payload["exp"] - time.time()))
        if ttl <= 0:
            return
        if self.cache:
            try:
                await self.cache.denylist_access_token(payload["jti"], ttl)
                return
            except Exception as exc:
                # Fall through to the local denylist; logout must still proceed
                self.logger.warning("access_token_denylist_failed", error=str(exc))
        now = int(time.time())
        with self._state_lock:
            # Expired entries are dropped whenever a new one is recorded
            expired = [jti for jti, exp in self._denylisted_access.items() if exp <= now]
            for jti in expired:
                del self._denylisted_access[jti]
            self._denylisted_access[payload["jti"]] = int(payload["exp"])

    async def _is_denylisted(self, jti: str) -> bool:
        if self.cache:
            try:
                if await self.cache.is_access_token_denylisted(jti):
                    return True
            except Exception as exc:
                self.logger.warning("access_token_denylist_check_failed", error=str(exc))
        now = int(time.time())
        with self._state_lock:
            exp = self._denylisted_access.get(jti)
            if exp is not None and exp <= now:
                self._denylisted_access.pop(jti, None)
                return False
            return exp is not None

    async def authenticate(self, access_token: str) -> User:
        payload = self.tokens.decode_access(access_token)
        if await self._is_denylisted(payload["jti"]):
            raise AuthenticationError("access token revoked", detail={"reason": "REVOKED"})
        user = self.store.get_user(payload["sub"])
        if user is None:
            raise AuthenticationError("user not found")
        return user

    async def logout(self, subject_id: str, access_token: Optional[str] = None) -> None:
        self.tokens.revoke(subject_id)
        if access_token:
            try:
                payload = self.tokens.decode_access(access_token)
            except AuthenticationError:
                payload = None
            if payload and payload["sub"] == subject_id:
                await self._denylist_access(payload)
        self.logger.info("logout", user_id=subject_id)
