import os
import stat
from datetime import datetime, timezone

import pytest
from cryptography.fernet import Fernet

from stepauth.client.secure_store import FileSecureStore, MemorySecureStore
from stepauth.storage.models import TokenPair


@pytest.fixture
def pair():
    return TokenPair(
        access_token="access-token",
        refresh_token="refresh-token",
        subject_id="u1",
        access_expires_at=datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc),
    )


def test_memory_store_roundtrip(pair):
    store = MemorySecureStore()
    assert store.load() is None
    store.save(pair)
    assert store.load() == pair
    store.clear()
    assert store.load() is None


def test_file_store_encrypts_at_rest(tmp_path, pair):
    path = tmp_path / "tokens" / "pair.bin"
    store = FileSecureStore(path, Fernet.generate_key().decode())
    store.save(pair)

    raw = path.read_bytes()
    assert b"refresh-token" not in raw
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert store.load() == pair


def test_file_store_survives_new_instance_with_passphrase(tmp_path, pair):
    path = tmp_path / "pair.bin"
    FileSecureStore(path, "correct horse battery staple").save(pair)
    assert FileSecureStore(path, "correct horse battery staple").load() == pair


def test_wrong_key_reads_as_empty(tmp_path, pair):
    path = tmp_path / "pair.bin"
    FileSecureStore(path, "key-one").save(pair)
    assert FileSecureStore(path, "key-two").load() is None


def test_clear_removes_file(tmp_path, pair):
    path = tmp_path / "pair.bin"
    store = FileSecureStore(path, "k")
    store.save(pair)
    store.clear()
    assert not path.exists()
    store.clear()
    assert store.load() is None


def test_key_required(tmp_path):
    with pytest.raises(ValueError):
        FileSecureStore(tmp_path / "pair.bin", "")
