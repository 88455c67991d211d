from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

import pytest
from psycopg import errors

from stepauth.logging import get_logger
from stepauth.storage.errors import ConstraintViolation
from stepauth.storage.models import (
    ChallengePurpose,
    ConsumedReason,
    OTPChallenge,
    RefreshHead,
    utc_now,
)
from stepauth.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rowcount=0, rows=None):
        self.rowcount = rowcount
        self._rows = rows or []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    """Records statements; ``responses`` is consumed one entry per execute."""

    def __init__(self, responses=None):
        self.statements = []
        self.responses = list(responses or [])
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        return FakeCursor()


def _store(tmp_path: Path, conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    store._connect = lambda: conn
    return store


def _challenge():
    return OTPChallenge.new(
        "u1", ChallengePurpose.VERIFICATION, "hmac-sha256$s$d", ttl=timedelta(minutes=2)
    )


def test_postgres_store_requires_stubbed_pool(tmp_path: Path):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    with pytest.raises(AssertionError):
        store._connect()


def test_create_challenge_supersedes_then_inserts_in_one_transaction(tmp_path: Path):
    conn = FakeConnection()
    store = _store(tmp_path, conn)
    challenge = _challenge()

    assert store.create_challenge(challenge) is challenge
    assert conn.transactions == 1
    (update_sql, update_params), (insert_sql, insert_params) = conn.statements
    assert update_sql.startswith("UPDATE otp_challenge SET consumed = TRUE")
    assert "NOT consumed" in update_sql
    assert update_params == (ConsumedReason.SUPERSEDED.value, "u1", "VERIFICATION")
    assert insert_sql.startswith("INSERT INTO otp_challenge")
    assert insert_params[0] == challenge.id


def test_create_challenge_retries_unique_race(tmp_path: Path):
    conn = FakeConnection([FakeCursor(), errors.UniqueViolation("dup")])
    store = _store(tmp_path, conn)
    store.create_challenge(_challenge())
    assert conn.transactions == 2
    assert len(conn.statements) == 4


def test_create_challenge_gives_up_after_retries(tmp_path: Path):
    responses = []
    for _ in range(3):
        responses += [FakeCursor(), errors.UniqueViolation("dup")]
    store = _store(tmp_path, FakeConnection(responses))
    with pytest.raises(ConstraintViolation):
        store.create_challenge(_challenge())


def test_compare_and_set_guards_on_version_and_consumed(tmp_path: Path):
    conn = FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=0)])
    store = _store(tmp_path, conn)
    challenge = _challenge()
    updated = challenge.with_update(attempts=1, consumed_reason=None, now=utc_now())

    assert store.compare_and_set_challenge(updated, expected_version=0) is True
    assert store.compare_and_set_challenge(updated, expected_version=0) is False
    sql, params = conn.statements[0]
    assert "WHERE id = %s AND version = %s AND NOT consumed" in sql
    assert params[-2:] == (challenge.id, 0)
    assert params[4] == 1


def test_active_challenge_row_mapping(tmp_path: Path):
    challenge = _challenge()
    row = {
        "id": challenge.id,
        "subject_id": "u1",
        "purpose": "VERIFICATION",
        "code_hash": challenge.code_hash,
        "created_at": challenge.created_at,
        "expires_at": challenge.expires_at,
        "attempts": 2,
        "max_attempts": 3,
        "consumed": False,
        "consumed_reason": None,
        "consumed_at": None,
        "version": 2,
    }
    store = _store(tmp_path, FakeConnection([FakeCursor(rows=[row])]))
    active = store.get_active_challenge("u1", ChallengePurpose.VERIFICATION)
    assert active.attempts == 2
    assert active.version == 2
    assert active.purpose is ChallengePurpose.VERIFICATION


def test_create_user_maps_unique_violation(tmp_path: Path):
    store = _store(tmp_path, FakeConnection([errors.UniqueViolation("dup")]))
    with pytest.raises(ConstraintViolation):
        store.create_user("dup@example.com")


def test_rotate_refresh_head_reports_lost_race(tmp_path: Path):
    conn = FakeConnection([FakeCursor(rowcount=0)])
    store = _store(tmp_path, conn)
    head = RefreshHead("u1", "jti-2", utc_now() + timedelta(days=1))
    assert store.rotate_refresh_head("u1", "jti-1", head) is False
    sql, params = conn.statements[0]
    assert sql.endswith("WHERE subject_id = %s AND jti = %s")
    assert params[-2:] == ("u1", "jti-1")


def test_store_is_built_from_dsn_alone(monkeypatch):
    pools = []

    class RecordingPool(DummyPool):
        def __init__(self, conninfo, **kwargs):
            pools.append((conninfo, kwargs))

    monkeypatch.setattr("stepauth.storage.postgres.ConnectionPool", RecordingPool)
    monkeypatch.setattr(PostgresStore, "_ensure_schema", lambda self: None)

    store = PostgresStore("postgresql://unit-test")

    assert store.dsn == "postgresql://unit-test"
    assert pools[0][0] == "postgresql://unit-test"
    assert not hasattr(store, "fs_root")
    with pytest.raises(TypeError):
        PostgresStore("postgresql://unit-test", fs_root="/tmp")
