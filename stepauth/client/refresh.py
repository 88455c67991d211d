"""Single-flight refresh of the client's token pair.

Every request that hits an authorization failure parks a future here. The
first one to arrive while the coordinator is idle starts the one exchange
for that episode; everyone else waits for its outcome. The queue is
swapped out and the state returns to ``IDLE`` in one synchronous step, so
a failure that arrives after settlement always starts a new episode.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import TYPE_CHECKING, Callable, List, Optional, Protocol

from stepauth.client.exchange import TokenExchanger
from stepauth.client.secure_store import SecureStore
from stepauth.config import ClientSettings
from stepauth.logging import get_logger
from stepauth.service.errors import (
    AuthLostError,
    TokenExchangeError,
    TransientNetworkError,
)
from stepauth.storage.models import TokenPair

if TYPE_CHECKING:
    from stepauth.client.gateway import RequestDescriptor

logger = get_logger(__name__)

AuthLostListener = Callable[[AuthLostError], None]


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class _Retriable(Protocol):
    retried: bool


class RefreshCoordinator:
    def __init__(
        self,
        store: SecureStore,
        exchanger: TokenExchanger,
        *,
        timeout: float = 5.0,
        max_attempts: int = 2,
        backoff: float = 0.25,
    ) -> None:
        if timeout <= 0:
            raise ValueError("refresh timeout must be positive")
        self.store = store
        self.exchanger = exchanger
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff = backoff
        self._state = RefreshState.IDLE
        self._queue: List[asyncio.Future] = []
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[AuthLostListener] = []

    @classmethod
    def from_settings(
        cls, store: SecureStore, exchanger: TokenExchanger, settings: ClientSettings
    ) -> "RefreshCoordinator":
        return cls(
            store,
            exchanger,
            timeout=settings.refresh_timeout_seconds,
            max_attempts=settings.refresh_max_attempts,
            backoff=settings.refresh_backoff_seconds,
        )

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def pending(self) -> int:
        """Number of callers waiting on the current episode."""
        return len(self._queue)

    def add_auth_lost_listener(self, listener: AuthLostListener) -> Callable[[], None]:
        """Register a callback fired once per failed episode. Returns its remover."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def on_auth_failure(self, request: "RequestDescriptor | _Retriable") -> str:
        """Wait for a fresh access token on behalf of ``request``.

        A request that was already replayed once is never queued again; it
        gets ``AuthLostError`` straight away.
        """
        if request.retried:
            logger.warning("refresh_retry_rejected")
            raise AuthLostError("request rejected after token refresh")

        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        async with self._lock:
            self._queue.append(fut)
            if self._state is RefreshState.IDLE:
                self._state = RefreshState.REFRESHING
                self._task = asyncio.create_task(self._run_refresh())
                logger.info("refresh_started")
            else:
                logger.debug("refresh_joined", pending=len(self._queue))

        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            # Abandoning a wait leaves the episode and the other callers alone
            if fut in self._queue:
                self._queue.remove(fut)
            if fut.done() and not fut.cancelled():
                fut.exception()
            raise

    async def _exchange_with_retry(self) -> TokenPair:
        current = await asyncio.to_thread(self.store.load)
        if current is None or not current.refresh_token:
            raise AuthLostError("no refresh token available")

        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.exchanger.exchange(current.refresh_token)
            except TransientNetworkError as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = self.backoff * (2 ** (attempt - 1))
                logger.warning(
                    "refresh_exchange_retry",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay_seconds=delay,
                    error=exc.message,
                )
                await asyncio.sleep(delay)

    async def _run_refresh(self) -> None:
        try:
            pair = await asyncio.wait_for(self._exchange_with_retry(), self.timeout)
            await asyncio.to_thread(self.store.save, pair)
        except asyncio.CancelledError:
            # Shutdown, not a rejection: keep the stored pair
            for fut in self._settle():
                if not fut.done():
                    fut.set_exception(AuthLostError("token refresh cancelled"))
            raise
        except asyncio.TimeoutError:
            logger.warning("refresh_timeout", timeout_seconds=self.timeout)
            await self._fail("token refresh timed out")
        except TokenExchangeError as exc:
            logger.warning("refresh_rejected", reason=exc.reason.value)
            await self._fail(f"refresh token {exc.reason.value.lower()}")
        except TransientNetworkError as exc:
            logger.warning("refresh_unreachable", error=exc.message)
            await self._fail("token refresh failed")
        except AuthLostError as exc:
            logger.warning("refresh_unavailable", error=exc.message)
            await self._fail(exc.message)
        except Exception as exc:
            logger.exception("refresh_failed", error_type=type(exc).__name__)
            await self._fail("token refresh failed")
        else:
            waiters = self._settle()
            for fut in waiters:
                if not fut.done():
                    fut.set_result(pair.access_token)
            logger.info("refresh_succeeded", waiters=len(waiters))

    def _settle(self) -> List[asyncio.Future]:
        waiters, self._queue = self._queue, []
        self._state = RefreshState.IDLE
        self._task = None
        return waiters

    async def _fail(self, message: str) -> None:
        # Credentials are cleared before the queue is released
        try:
            await asyncio.to_thread(self.store.clear)
        except OSError as exc:
            logger.error("token_store_clear_failed", error=str(exc))
        finally:
            waiters = self._settle()
            for fut in waiters:
                if not fut.done():
                    fut.set_exception(AuthLostError(message))
            logger.warning("auth_lost", waiters=len(waiters))
            self._notify_auth_lost(AuthLostError(message))

    def _notify_auth_lost(self, signal: AuthLostError) -> None:
        for listener in list(self._listeners):
            try:
                listener(signal)
            except Exception as exc:
                logger.error(
                    "auth_lost_listener_failed",
                    listener=getattr(listener, "__name__", repr(listener)),
                    error=str(exc),
                )

    async def aclose(self) -> None:
        """Cancel an in-flight exchange. Waiters see ``AuthLostError``, the stored pair is kept."""
        task = self._task
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
