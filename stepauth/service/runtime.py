from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from stepauth.config import get_settings, reset_settings_cache
from stepauth.logging import get_logger
from stepauth.service.auth import AuthService
from stepauth.service.notifier import EmailNotifier, MemoryNotifier, Notifier
from stepauth.service.otp import OTPAuthority
from stepauth.service.tokens import TokenService
from stepauth.storage.memory import MemoryStore
from stepauth.storage.postgres import PostgresStore
from stepauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_LOCAL_RATE_LIMIT_SWEEP = timedelta(seconds=60)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store: Union[MemoryStore, PostgresStore] = MemoryStore(
                    fs_root=self.settings.shared_fs_root
                )
            else:
                if not self.settings.database_url:
                    raise RuntimeError("DATABASE_URL is required when USE_MEMORY_STORE=false")
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits and the access-token denylist; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and the "
                    "access-token denylist are in-memory only."
                ),
                mode=fallback_mode,
            )

        self.notifier: Notifier = self._build_notifier()
        self.otp = OTPAuthority.from_settings(self.store, self.settings)
        self.tokens = TokenService(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.otp,
            self.tokens,
            self.notifier,
            self.settings,
            cache=self.cache,
        )
        # key -> (tokens, last update, time the bucket is full again)
        self._local_rate_limits: Dict[str, Tuple[float, datetime, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()
        self._local_rate_limit_swept_at = datetime.now(timezone.utc)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            notifier=type(self.notifier).__name__,
            otp_hash_scheme=self.settings.otp_hash_scheme.value,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )

    def _build_notifier(self) -> Notifier:
        if self.settings.test_mode:
            return MemoryNotifier()
        if not self.settings.smtp_host:
            if not self.settings.allow_outbox_notifier_dev:
                raise RuntimeError(
                    "SMTP_HOST is required to deliver one-time codes; "
                    "set TEST_MODE=true or ALLOW_OUTBOX_NOTIFIER_DEV=true to keep codes "
                    "in the in-process outbox."
                )
            logger.warning(
                "notifier_outbox_mode",
                message=(
                    "Running without SMTP under ALLOW_OUTBOX_NOTIFIER_DEV; codes are "
                    "kept in the in-process outbox and never reach users."
                ),
            )
            return MemoryNotifier()
        return EmailNotifier(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


def _sweep_local_rate_limits(runtime: Runtime, now: datetime) -> None:
    """Drop buckets that have refilled; a missing key starts out full."""
    stale = [
        key for key, (_, _, full_at) in runtime._local_rate_limits.items() if full_at <= now
    ]
    for key in stale:
        del runtime._local_rate_limits[key]
    runtime._local_rate_limit_swept_at = now
    if stale:
        logger.debug("rate_limit_buckets_swept", removed=len(stale))


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce a token-bucket rate limit, in-process when Redis is unavailable.

    Returns ``allowed``, or ``(allowed, remaining, reset_seconds)`` when
    ``return_remaining`` is set.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        if now - runtime._local_rate_limit_swept_at >= _LOCAL_RATE_LIMIT_SWEEP:
            _sweep_local_rate_limits(runtime, now)
        tokens, last_ts, _ = runtime._local_rate_limits.get(key, (float(limit), now, now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        full_at = now + timedelta(seconds=(float(limit) - tokens) / refill_rate)
        runtime._local_rate_limits[key] = (tokens, now, full_at)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
