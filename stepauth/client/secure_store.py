from __future__ import annotations

import base64
import hashlib
import json
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from cryptography.fernet import Fernet, InvalidToken

from stepauth.logging import get_logger
from stepauth.storage.models import TokenPair

logger = get_logger(__name__)


class SecureStore(Protocol):
    """Holds the client's current token pair."""

    def load(self) -> Optional[TokenPair]:
        ...

    def save(self, pair: TokenPair) -> None:
        ...

    def clear(self) -> None:
        ...


def _pair_to_dict(pair: TokenPair) -> dict:
    return {
        "access_token": pair.access_token,
        "refresh_token": pair.refresh_token,
        "subject_id": pair.subject_id,
        "token_type": pair.token_type,
        "access_expires_at": (
            pair.access_expires_at.isoformat() if pair.access_expires_at else None
        ),
    }


def _pair_from_dict(data: dict) -> TokenPair:
    expires = data.get("access_expires_at")
    return TokenPair(
        access_token=data["access_token"],
        refresh_token=data["refresh_token"],
        subject_id=data["subject_id"],
        token_type=data.get("token_type", "bearer"),
        access_expires_at=datetime.fromisoformat(expires) if expires else None,
    )


class MemorySecureStore:
    def __init__(self, pair: Optional[TokenPair] = None) -> None:
        self._pair = pair
        self._lock = threading.Lock()

    def load(self) -> Optional[TokenPair]:
        with self._lock:
            return self._pair

    def save(self, pair: TokenPair) -> None:
        with self._lock:
            self._pair = pair

    def clear(self) -> None:
        with self._lock:
            self._pair = None


class FileSecureStore:
    """Fernet-encrypted token file, written atomically with 0600 permissions.

    ``key`` may be a urlsafe base64 Fernet key or any passphrase, which is
    stretched with SHA-256 into one.
    """

    def __init__(self, path: str | Path, key: str) -> None:
        if not key:
            raise ValueError("FileSecureStore needs an encryption key (TOKEN_STORE_KEY)")
        self.path = Path(path)
        self._cipher = self._build_cipher(key)
        self._lock = threading.Lock()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key: str) -> Fernet:
        try:
            return Fernet(key.encode())
        except ValueError:
            return Fernet(self._derive_cipher_key(key))

    def load(self) -> Optional[TokenPair]:
        with self._lock:
            try:
                blob = self.path.read_bytes()
            except FileNotFoundError:
                return None
            try:
                data = json.loads(self._cipher.decrypt(blob))
                return _pair_from_dict(data)
            except (InvalidToken, ValueError, KeyError) as exc:
                # Unreadable credentials are as good as none; force a fresh login
                logger.warning(
                    "token_store_unreadable",
                    path=str(self.path),
                    error_type=type(exc).__name__,
                )
                return None

    def save(self, pair: TokenPair) -> None:
        blob = self._cipher.encrypt(json.dumps(_pair_to_dict(pair)).encode())
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(blob)
                os.chmod(tmp_path, 0o600)
                os.replace(tmp_path, self.path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
