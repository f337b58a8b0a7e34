from __future__ import annotations

import asyncio
import threading
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from kioskapi.config import get_settings, reset_settings_cache
from kioskapi.logging import get_logger
from kioskapi.service.identity import IdentityService
from kioskapi.service.kiosks import KioskService
from kioskapi.service.reviews import ReviewService
from kioskapi.service.tokens import AuthGate, TokenService
from kioskapi.storage.memory import MemoryStore
from kioskapi.storage.postgres import PostgresStore
from kioskapi.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
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
    """Holds the store, the optional Redis cache and the services built on them."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if self.settings.use_memory_store:
            self.store: Union[MemoryStore, PostgresStore] = MemoryStore()
        else:
            self.store = PostgresStore(self.settings.database_url)
        logger.info(
            "runtime_store_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            database_url=None
            if self.settings.use_memory_store
            else _mask_url_password(self.settings.database_url),
        )

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            redis_error: Exception | None = None
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
            if self.cache is None:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; start Redis, unset "
                        "REDIS_URL, or set ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error),
                    mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
                )

        self.tokens = TokenService(self.store)
        self.auth_gate = AuthGate(self.tokens)
        self.identity = IdentityService(
            self.store,
            self.tokens,
            token_ttl_seconds=self.settings.access_token_ttl_seconds,
        )
        self.kiosks = KioskService(self.store, page_size=self.settings.search_page_size)
        self.reviews = ReviewService(self.store)

        self._local_rate_limits: Dict[str, Tuple[int, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            token_ttl_seconds=self.settings.access_token_ttl_seconds,
            token_sweep_interval_seconds=self.settings.token_sweep_interval_seconds,
        )

    async def startup(self) -> None:
        if isinstance(self.store, PostgresStore):
            await self.store.open()

    async def shutdown(self) -> None:
        await self.store.close()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked under a thread lock)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a freshly read environment; TEST_MODE only."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Count one attempt for ``key`` in a fixed window of ``window_seconds``.

    At most ``limit`` attempts are allowed per window. Redis holds the counter
    when configured; otherwise it lives in this process.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining
        )
    now = time.monotonic()
    async with runtime._local_rate_limit_lock:
        # entries hold (count, reset_at); finished windows are dropped for every key
        for stale_key in [
            k for k, (_, reset_at) in runtime._local_rate_limits.items() if reset_at <= now
        ]:
            runtime._local_rate_limits.pop(stale_key, None)
        count, reset_at = runtime._local_rate_limits.get(key, (0, now + window_seconds))
        count += 1
        runtime._local_rate_limits[key] = (count, reset_at)
        allowed = count <= limit
        remaining = max(0, limit - count)
        reset_seconds = max(0, int(round(reset_at - now)))
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
