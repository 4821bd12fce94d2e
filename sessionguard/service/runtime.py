from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from sessionguard.config import Settings, get_settings, reset_settings_cache
from sessionguard.logging import get_logger
from sessionguard.service.csrf import CSRFGuard
from sessionguard.service.rate_limit import RateLimiter
from sessionguard.service.revocation import RevocationStore
from sessionguard.service.sessions import SessionService
from sessionguard.service.tokens import TokenService
from sessionguard.service.totp import TOTPService
from sessionguard.service.two_factor import TwoFactorService
from sessionguard.storage.errors import StorageError
from sessionguard.storage.kv import KeyValueStore
from sessionguard.storage.memory import MemoryKVStore
from sessionguard.storage.redis_kv import RedisKVStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def _build_store(settings: Settings, clock: Callable[[], float]) -> KeyValueStore:
    if settings.use_memory_store:
        logger.info("runtime_store_initialized", store_type="memory")
        return MemoryKVStore(clock=clock)

    redis_error: Exception | None = None
    if settings.redis_url:
        try:
            store = RedisKVStore(settings.redis_url)
            store.verify_connection()
            logger.info(
                "runtime_store_initialized",
                store_type="redis",
                redis_url=_mask_url_password(settings.redis_url),
            )
            return store
        except StorageError as exc:
            redis_error = exc

    if not settings.test_mode:
        raise RuntimeError(
            "Redis is required for refresh tokens, blacklists and rate limits; "
            "start Redis or set USE_MEMORY_STORE=true/TEST_MODE=true for a local fallback."
        ) from redis_error

    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(redis_error) if redis_error else "redis_url_missing",
        message="Running under TEST_MODE with an in-memory store; nothing survives a restart.",
    )
    return MemoryKVStore(clock=clock)


class Runtime:
    """Holds the shared store handle and the services built on top of it."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else _build_store(self.settings, clock)

        self.tokens = TokenService.from_settings(self.settings, clock=clock)
        self.revocation = RevocationStore(self.store, clock=clock)
        self.totp = TOTPService(issuer=self.settings.app_name, clock=clock)
        self.two_factor = TwoFactorService(
            self.store, self.totp, window=self.settings.totp_window, clock=clock
        )
        self.sessions = SessionService(
            self.tokens,
            self.revocation,
            two_factor=self.two_factor,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            enforce_mfa=self.settings.enforce_mfa,
            require_email_verification=self.settings.require_email_verification,
        )
        self.csrf = CSRFGuard(secure=self.settings.cookie_secure)
        self.rate_limiter = RateLimiter(self.store, clock=clock)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            enforce_mfa=self.settings.enforce_mfa,
            rate_limit_enabled=self.settings.rate_limit_enabled,
        )

    async def close(self) -> None:
        await self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        if runtime is not None and isinstance(runtime.store, RedisKVStore):
            previous = runtime
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(previous.close())
            except RuntimeError:
                asyncio.run(previous.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
