import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from stepauth.config import Settings
from stepauth.service.errors import AuthenticationError, TokenExchangeError, TokenRejection
from stepauth.service.tokens import TokenService
from stepauth.storage.memory import MemoryStore


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="token-test-secret-0123456789abcdef",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "tokens"))


@pytest.fixture
def tokens(store, settings, clock):
    return TokenService(store, settings, clock=clock)


def _forge(token: str, **changes) -> str:
    header, payload, sig = token.split(".")
    data = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
    data.update(changes)
    payload = base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")
    return f"{header}.{payload}.{sig}"


def test_mint_sets_refresh_head(tokens, store):
    pair = tokens.mint("u1")
    assert pair.subject_id == "u1"
    assert pair.token_type == "bearer"
    assert store.get_refresh_head("u1") is not None
    assert tokens.authenticate(pair.access_token) == "u1"


def test_exchange_rotates_and_revokes_previous(tokens):
    first = tokens.mint("u1")
    second = tokens.exchange(first.refresh_token)
    assert second.refresh_token != first.refresh_token

    with pytest.raises(TokenExchangeError) as excinfo:
        tokens.exchange(first.refresh_token)
    assert excinfo.value.reason is TokenRejection.REVOKED

    third = tokens.exchange(second.refresh_token)
    assert tokens.authenticate(third.access_token) == "u1"


def test_latest_mint_wins(tokens):
    older = tokens.mint("u1")
    newer = tokens.mint("u1")
    with pytest.raises(TokenExchangeError) as excinfo:
        tokens.exchange(older.refresh_token)
    assert excinfo.value.reason is TokenRejection.REVOKED
    tokens.exchange(newer.refresh_token)


def test_expired_refresh_token(tokens, clock):
    pair = tokens.mint("u1")
    clock.now += timedelta(minutes=61)
    with pytest.raises(TokenExchangeError) as excinfo:
        tokens.exchange(pair.refresh_token)
    assert excinfo.value.reason is TokenRejection.EXPIRED


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c", None])
def test_garbage_refresh_token_is_invalid(tokens, token):
    with pytest.raises(TokenExchangeError) as excinfo:
        tokens.exchange(token)
    assert excinfo.value.reason is TokenRejection.INVALID


def test_access_token_cannot_be_exchanged(tokens):
    pair = tokens.mint("u1")
    with pytest.raises(TokenExchangeError) as excinfo:
        tokens.exchange(pair.access_token)
    assert excinfo.value.reason is TokenRejection.INVALID


def test_tampered_payload_is_invalid(tokens):
    pair = tokens.mint("u1")
    forged = _forge(pair.refresh_token, sub="u2")
    with pytest.raises(TokenExchangeError) as excinfo:
        tokens.exchange(forged)
    assert excinfo.value.reason is TokenRejection.INVALID


def test_other_secret_is_invalid(tokens, store, clock):
    pair = tokens.mint("u1")
    other = TokenService(
        store, Settings(jwt_secret="some-other-secret-0123456789abcdef"), clock=clock
    )
    with pytest.raises(TokenExchangeError):
        other.exchange(pair.refresh_token)


def test_revoke_drops_head(tokens):
    pair = tokens.mint("u1")
    tokens.revoke("u1")
    with pytest.raises(TokenExchangeError) as excinfo:
        tokens.exchange(pair.refresh_token)
    assert excinfo.value.reason is TokenRejection.REVOKED


def test_expired_access_token(tokens, clock):
    pair = tokens.mint("u1")
    clock.now += timedelta(minutes=16)
    with pytest.raises(AuthenticationError) as excinfo:
        tokens.authenticate(pair.access_token)
    assert excinfo.value.detail == {"reason": "EXPIRED"}


def test_refresh_token_is_not_an_access_token(tokens):
    pair = tokens.mint("u1")
    with pytest.raises(AuthenticationError):
        tokens.authenticate(pair.refresh_token)


def test_exchange_error_is_unauthorized():
    err = TokenExchangeError(TokenRejection.EXPIRED)
    assert err.status_code == 401
    assert err.error_code == "unauthorized"
    assert err.detail == {"reason": "EXPIRED"}
