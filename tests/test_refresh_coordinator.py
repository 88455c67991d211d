"""Tests for single-flight token refresh.

Async tests run through the ``pytest_pyfunc_call`` hook in conftest.
"""

import asyncio
import threading

import pytest

from stepauth.client.gateway import RequestDescriptor
from stepauth.client.refresh import RefreshCoordinator, RefreshState
from stepauth.client.secure_store import MemorySecureStore
from stepauth.config import ClientSettings
from stepauth.service.errors import (
    AuthLostError,
    TokenExchangeError,
    TokenRejection,
    TransientNetworkError,
)
from stepauth.storage.models import TokenPair


def _pair(n: int) -> TokenPair:
    return TokenPair(access_token=f"access-{n}", refresh_token=f"refresh-{n}", subject_id="u1")


class FakeExchanger:
    """Hands out access-N/refresh-N; ``gate`` holds every exchange until set."""

    def __init__(self, *, fail_with=None, transient_failures=0, hang=False):
        self.calls = []
        self.gate = asyncio.Event()
        self.fail_with = fail_with
        self.transient_failures = transient_failures
        self.hang = hang

    async def exchange(self, refresh_token):
        self.calls.append(refresh_token)
        if self.hang:
            await asyncio.Event().wait()
        await self.gate.wait()
        if self.transient_failures:
            self.transient_failures -= 1
            raise TransientNetworkError("connection reset")
        if self.fail_with is not None:
            raise self.fail_with
        return _pair(len(self.calls) + 1)


def _request(retried=False):
    return RequestDescriptor("GET", "/v1/me", retried=retried)


async def _settle_loop():
    for _ in range(10):
        await asyncio.sleep(0)


async def _wait_until(condition, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        assert loop.time() < deadline, "condition not reached"
        await asyncio.sleep(0.005)


async def test_concurrent_failures_share_one_exchange():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger()
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0)

    waiters = [asyncio.create_task(coordinator.on_auth_failure(_request())) for _ in range(10)]
    await _settle_loop()
    assert coordinator.state is RefreshState.REFRESHING
    assert coordinator.pending == 10

    exchanger.gate.set()
    tokens = await asyncio.gather(*waiters)

    assert exchanger.calls == ["refresh-1"]
    assert tokens == ["access-2"] * 10
    assert store.load() == _pair(2)
    assert coordinator.state is RefreshState.IDLE
    assert coordinator.pending == 0


async def test_late_joiner_during_refresh_gets_same_token():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger()
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0)

    first = asyncio.create_task(coordinator.on_auth_failure(_request()))
    await _settle_loop()
    second = asyncio.create_task(coordinator.on_auth_failure(_request()))
    await _settle_loop()
    exchanger.gate.set()

    assert await first == await second == "access-2"
    assert len(exchanger.calls) == 1


async def test_failure_after_settlement_starts_new_episode():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger()
    exchanger.gate.set()
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0)

    assert await coordinator.on_auth_failure(_request()) == "access-2"
    assert await coordinator.on_auth_failure(_request()) == "access-3"
    assert exchanger.calls == ["refresh-1", "refresh-2"]


async def test_rejected_refresh_rejects_everyone_and_clears_store():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger(fail_with=TokenExchangeError(TokenRejection.REVOKED))
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0)
    signals = []
    coordinator.add_auth_lost_listener(signals.append)

    waiters = [asyncio.create_task(coordinator.on_auth_failure(_request())) for _ in range(4)]
    await _settle_loop()
    exchanger.gate.set()
    results = await asyncio.gather(*waiters, return_exceptions=True)

    assert all(isinstance(r, AuthLostError) for r in results)
    assert len({r.message for r in results}) == 1
    assert store.load() is None
    assert coordinator.state is RefreshState.IDLE
    assert len(signals) == 1
    assert len(exchanger.calls) == 1


async def test_retried_request_is_never_requeued():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger()
    coordinator = RefreshCoordinator(store, exchanger)

    with pytest.raises(AuthLostError):
        await coordinator.on_auth_failure(_request(retried=True))
    assert exchanger.calls == []
    assert coordinator.state is RefreshState.IDLE
    # Credentials are left for the caller to decide on
    assert store.load() == _pair(1)


async def test_timeout_rejects_queue():
    store = MemorySecureStore(_pair(1))
    coordinator = RefreshCoordinator(store, FakeExchanger(hang=True), timeout=0.05)
    signals = []
    coordinator.add_auth_lost_listener(signals.append)

    with pytest.raises(AuthLostError):
        await coordinator.on_auth_failure(_request())
    assert store.load() is None
    assert coordinator.state is RefreshState.IDLE
    assert signals and "timed out" in signals[0].message


async def test_transient_failures_are_retried_within_episode():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger(transient_failures=1)
    exchanger.gate.set()
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0, max_attempts=2, backoff=0)

    assert await coordinator.on_auth_failure(_request()) == "access-3"
    assert exchanger.calls == ["refresh-1", "refresh-1"]


async def test_transient_failures_exhaust_attempts():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger(transient_failures=5)
    exchanger.gate.set()
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0, max_attempts=3, backoff=0)

    with pytest.raises(AuthLostError):
        await coordinator.on_auth_failure(_request())
    assert len(exchanger.calls) == 3
    assert store.load() is None


async def test_missing_refresh_token_is_auth_lost():
    exchanger = FakeExchanger()
    coordinator = RefreshCoordinator(MemorySecureStore(), exchanger)
    with pytest.raises(AuthLostError):
        await coordinator.on_auth_failure(_request())
    assert exchanger.calls == []


async def test_cancelled_waiter_does_not_disturb_others():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger()
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0)

    abandoned = asyncio.create_task(coordinator.on_auth_failure(_request()))
    kept = asyncio.create_task(coordinator.on_auth_failure(_request()))
    await _settle_loop()
    assert coordinator.pending == 2

    abandoned.cancel()
    with pytest.raises(asyncio.CancelledError):
        await abandoned
    assert coordinator.pending == 1
    assert coordinator.state is RefreshState.REFRESHING

    exchanger.gate.set()
    assert await kept == "access-2"
    assert len(exchanger.calls) == 1


async def test_refresh_completes_when_every_waiter_leaves():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger()
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0)

    waiter = asyncio.create_task(coordinator.on_auth_failure(_request()))
    await _settle_loop()
    waiter.cancel()
    await asyncio.gather(waiter, return_exceptions=True)

    exchanger.gate.set()
    await _wait_until(lambda: coordinator.state is RefreshState.IDLE)
    assert store.load() == _pair(2)
    assert coordinator.state is RefreshState.IDLE


async def test_listener_errors_do_not_break_settlement():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger(fail_with=TokenExchangeError(TokenRejection.EXPIRED))
    exchanger.gate.set()
    coordinator = RefreshCoordinator(store, exchanger)
    seen = []

    def broken(_signal):
        raise RuntimeError("listener bug")

    coordinator.add_auth_lost_listener(broken)
    remove = coordinator.add_auth_lost_listener(seen.append)

    with pytest.raises(AuthLostError):
        await coordinator.on_auth_failure(_request())
    assert len(seen) == 1

    remove()
    store.save(_pair(1))
    with pytest.raises(AuthLostError):
        await coordinator.on_auth_failure(_request())
    assert len(seen) == 1


async def test_aclose_keeps_stored_pair():
    store = MemorySecureStore(_pair(1))
    exchanger = FakeExchanger()
    coordinator = RefreshCoordinator(store, exchanger)

    waiter = asyncio.create_task(coordinator.on_auth_failure(_request()))
    await _settle_loop()
    await coordinator.aclose()

    with pytest.raises(AuthLostError):
        await waiter
    assert store.load() == _pair(1)
    assert coordinator.state is RefreshState.IDLE


async def test_store_is_used_off_the_event_loop():
    class RecordingStore(MemorySecureStore):
        def __init__(self, pair):
            super().__init__(pair)
            self.threads = []

        def load(self):
            self.threads.append(threading.get_ident())
            return super().load()

        def save(self, pair):
            self.threads.append(threading.get_ident())
            super().save(pair)

    store = RecordingStore(_pair(1))
    exchanger = FakeExchanger()
    exchanger.gate.set()
    coordinator = RefreshCoordinator(store, exchanger, timeout=2.0)

    assert await coordinator.on_auth_failure(_request()) == "access-2"
    assert len(store.threads) == 2
    assert threading.get_ident() not in store.threads


def test_from_settings():
    settings = ClientSettings(
        refresh_timeout_seconds=3.0, refresh_max_attempts=4, refresh_backoff_seconds=0.1
    )
    coordinator = RefreshCoordinator.from_settings(MemorySecureStore(), FakeExchanger(), settings)
    assert coordinator.timeout == 3.0
    assert coordinator.max_attempts == 4
    assert coordinator.backoff == 0.1


def test_non_positive_timeout_rejected():
    with pytest.raises(ValueError):
        RefreshCoordinator(MemorySecureStore(), FakeExchanger(), timeout=0)
