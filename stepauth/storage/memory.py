from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from stepauth.logging import get_logger
from stepauth.storage.errors import ConstraintViolation
from stepauth.storage.models import (
    ChallengePurpose,
    ConsumedReason,
    OTPChallenge,
    RefreshHead,
    User,
    utc_now,
)


class MemoryStore:
    """In-process store persisted to a JSON state file under ``fs_root``.

    All reads hand out copies, so a caller can only change stored state through
    the store methods.

    Locking:
    - challenge writes for one (subject_id, purpose) pair are serialized by
      that pair's lock, so unrelated pairs never wait on each other;
    - ``_data_lock`` only guards dictionary access and is never held across
      file I/O;
    - one thread writes the state file at a time; a write requested while
      another is in progress is folded into that writer's next pass.
    """

    def __init__(self, fs_root: str = "/tmp/stepauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.challenges: Dict[str, OTPChallenge] = {}
        # (subject_id, purpose) -> challenge ids, oldest first
        self._challenge_index: Dict[Tuple[str, str], List[str]] = {}
        self.refresh_heads: Dict[str, RefreshHead] = {}
        self._data_lock = threading.RLock()
        self._pair_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._pair_locks_guard = threading.Lock()
        self._state_generation = 0
        self._writer_active = False
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "stepauth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- users & credentials -------------------------------------------------

    def create_user(self, email: str, *, meta: Optional[Dict] = None) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(u.email == normalized for u in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=normalized, meta=meta)
            self.users[user.id] = user
        self._persist_state()
        return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email == normalized:
                    return replace(user)
        return None

    def mark_user_verified(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.is_verified:
                return
            user.is_verified = True
        self._persist_state()

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
        self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # -- OTP challenges ------------------------------------------------------

    @staticmethod
    def _pair_key(subject_id: str, purpose: ChallengePurpose) -> Tuple[str, str]:
        return (subject_id, ChallengePurpose(purpose).value)

    def _pair_lock(self, subject_id: str, purpose: ChallengePurpose) -> threading.Lock:
        key = self._pair_key(subject_id, purpose)
        with self._pair_locks_guard:
            lock = self._pair_locks.get(key)
            if lock is None:
                lock = self._pair_locks[key] = threading.Lock()
            return lock

    def create_challenge(self, challenge: OTPChallenge) -> OTPChallenge:
        """Insert ``challenge`` and consume every live challenge for the same pair."""
        key = self._pair_key(challenge.subject_id, challenge.purpose)
        with self._pair_lock(challenge.subject_id, challenge.purpose):
            with self._data_lock:
                now = utc_now()
                superseded = 0
                for challenge_id in self._challenge_index.get(key, []):
                    existing = self.challenges[challenge_id]
                    if existing.consumed:
                        continue
                    self.challenges[challenge_id] = existing.with_update(
                        attempts=existing.attempts,
                        consumed_reason=ConsumedReason.SUPERSEDED,
                        now=now,
                    )
                    superseded += 1
                stored = replace(challenge)
                self.challenges[stored.id] = stored
                self._challenge_index.setdefault(key, []).append(stored.id)
            self._persist_state()
        if superseded:
            self.logger.debug(
                "otp_challenges_superseded",
                subject_id=challenge.subject_id,
                purpose=key[1],
                count=superseded,
            )
        return replace(stored)

    def get_challenge(self, challenge_id: str) -> Optional[OTPChallenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            return replace(challenge) if challenge else None

    def get_latest_challenge(
        self, subject_id: str, purpose: ChallengePurpose
    ) -> Optional[OTPChallenge]:
        with self._data_lock:
            ids = self._challenge_index.get(self._pair_key(subject_id, purpose))
            if not ids:
                return None
            return replace(self.challenges[ids[-1]])

    def get_active_challenge(
        self, subject_id: str, purpose: ChallengePurpose
    ) -> Optional[OTPChallenge]:
        latest = self.get_latest_challenge(subject_id, purpose)
        if latest is None or latest.consumed:
            return None
        return latest

    def list_challenges(
        self, subject_id: str, purpose: Optional[ChallengePurpose] = None
    ) -> List[OTPChallenge]:
        with self._data_lock:
            return [
                replace(c)
                for c in sorted(self.challenges.values(), key=lambda c: c.created_at)
                if c.subject_id == subject_id
                and (purpose is None or c.purpose == ChallengePurpose(purpose))
            ]

    def compare_and_set_challenge(
        self, updated: OTPChallenge, expected_version: int
    ) -> bool:
        """Store ``updated`` only if the record is unconsumed and still at ``expected_version``."""
        with self._pair_lock(updated.subject_id, updated.purpose):
            with self._data_lock:
                current = self.challenges.get(updated.id)
                if (
                    current is None
                    or current.consumed
                    or current.version != expected_version
                ):
                    return False
                self.challenges[updated.id] = replace(updated)
            self._persist_state()
            return True

    # -- refresh token heads -------------------------------------------------

    def get_refresh_head(self, subject_id: str) -> Optional[RefreshHead]:
        with self._data_lock:
            head = self.refresh_heads.get(subject_id)
            return replace(head) if head else None

    def set_refresh_head(self, head: RefreshHead) -> None:
        with self._data_lock:
            self.refresh_heads[head.subject_id] = replace(head)
        self._persist_state()

    def rotate_refresh_head(
        self, subject_id: str, expected_jti: str, new_head: RefreshHead
    ) -> bool:
        with self._data_lock:
            current = self.refresh_heads.get(subject_id)
            if current is None or current.jti != expected_jti:
                return False
            self.refresh_heads[subject_id] = replace(new_head)
        self._persist_state()
        return True

    def delete_refresh_head(self, subject_id: str) -> None:
        with self._data_lock:
            removed = self.refresh_heads.pop(subject_id, None)
        if removed is not None:
            self._persist_state()

    # -- persistence ---------------------------------------------------------

    def _persist_state(self) -> None:
        with self._data_lock:
            self._state_generation += 1
            if self._writer_active:
                return
            self._writer_active = True
        while True:
            with self._data_lock:
                generation = self._state_generation
                state = self._snapshot_state()
            try:
                self._write_state(state)
            except Exception:
                with self._data_lock:
                    self._writer_active = False
                raise
            with self._data_lock:
                if self._state_generation == generation:
                    self._writer_active = False
                    return

    def _snapshot_state(self) -> dict:
        return {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "challenges": [
                self._serialize_challenge(c) for c in self.challenges.values()
            ],
            "refresh_heads": [
                self._serialize_refresh_head(h) for h in self.refresh_heads.values()
            ],
        }

    def _write_state(self, state: dict) -> None:
        path = self._state_path()
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, "w") as fh:
                json.dump(state, fh, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        challenges = sorted(
            (self._deserialize_challenge(c) for c in data.get("challenges", [])),
            key=lambda c: c.created_at,
        )
        self.challenges = {c.id: c for c in challenges}
        self._challenge_index = {}
        for challenge in challenges:
            key = self._pair_key(challenge.subject_id, challenge.purpose)
            self._challenge_index.setdefault(key, []).append(challenge.id)
        self.refresh_heads = {
            h["subject_id"]: self._deserialize_refresh_head(h)
            for h in data.get("refresh_heads", [])
        }
        self.logger.info(
            "store_state_loaded",
            users=len(self.users),
            challenges=len(self.challenges),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "created_at": self._serialize_datetime(user.created_at),
            "is_verified": user.is_verified,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utc_now(),
            is_verified=bool(data.get("is_verified", False)),
            meta=data.get("meta"),
        )

    def _serialize_challenge(self, challenge: OTPChallenge) -> dict:
        return {
            "id": challenge.id,
            "subject_id": challenge.subject_id,
            "purpose": challenge.purpose.value,
            "code_hash": challenge.code_hash,
            "created_at": self._serialize_datetime(challenge.created_at),
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "attempts": challenge.attempts,
            "max_attempts": challenge.max_attempts,
            "consumed": challenge.consumed,
            "consumed_reason": (
                challenge.consumed_reason.value if challenge.consumed_reason else None
            ),
            "consumed_at": self._serialize_datetime(challenge.consumed_at),
            "version": challenge.version,
        }

    def _deserialize_challenge(self, data: dict) -> OTPChallenge:
        reason = data.get("consumed_reason")
        return OTPChallenge(
            id=data["id"],
            subject_id=data["subject_id"],
            purpose=ChallengePurpose(data["purpose"]),
            code_hash=data["code_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            consumed=bool(data.get("consumed", False)),
            consumed_reason=ConsumedReason(reason) if reason else None,
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
            version=int(data.get("version", 0)),
        )

    def _serialize_refresh_head(self, head: RefreshHead) -> dict:
        return {
            "subject_id": head.subject_id,
            "jti": head.jti,
            "expires_at": self._serialize_datetime(head.expires_at),
            "rotated_at": self._serialize_datetime(head.rotated_at),
        }

    def _deserialize_refresh_head(self, data: dict) -> RefreshHead:
        return RefreshHead(
            subject_id=data["subject_id"],
            jti=data["jti"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            rotated_at=self._deserialize_datetime(data.get("rotated_at")) or utc_now(),
        )
