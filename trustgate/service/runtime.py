from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from argon2 import PasswordHasher, Type

from trustgate.config import Settings, get_settings, reset_settings_cache
from trustgate.logging import get_logger
from trustgate.service.auth import AuthOrchestrator
from trustgate.service.clients import ClientApprovalGate
from trustgate.service.mfa import MfaAttemptTracker, MfaService
from trustgate.service.sessions import SessionRegistry
from trustgate.service.tokens import TokenService
from trustgate.storage.memory import MemoryStore
from trustgate.storage.postgres import PostgresStore
from trustgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
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
    """Holds the singleton store, cache and service instances."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        password_hasher: Optional[PasswordHasher] = None,
    ):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    mfa_encryption_key=self.settings.mfa_key_material
                )
            else:
                store = PostgresStore(
                    self.settings.database_url,
                    mfa_encryption_key=self.settings.mfa_key_material,
                    min_size=self.settings.database_pool_min_size,
                    max_size=self.settings.database_pool_max_size,
                    timeout=self.settings.database_pool_timeout_seconds,
                )
                store.ensure_schema()
                self.store = store
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
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
                    "Redis is required for shared MFA lockout tracking; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode=fallback_mode,
            )

        self.tokens = TokenService(self.store, self.settings)
        self.mfa = MfaService(self.store, self.settings)
        self.gate = ClientApprovalGate(self.store, self.settings)
        self.sessions = SessionRegistry(
            idle_minutes=self.settings.session_idle_minutes,
            max_entries=self.settings.session_max_entries,
        )
        self.mfa_attempts = MfaAttemptTracker(
            self.cache,
            max_attempts=self.settings.mfa_max_attempts,
            lockout_seconds=self.settings.mfa_lockout_seconds,
        )
        self.auth = AuthOrchestrator(
            self.store,
            self.settings,
            tokens=self.tokens,
            mfa=self.mfa,
            gate=self.gate,
            sessions=self.sessions,
            attempts=self.mfa_attempts,
            password_hasher=password_hasher or PasswordHasher(type=Type.ID),
        )
        logger.info("runtime_initialized", redis_enabled=self.cache is not None)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path for the existing runtime,
    then a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(
    *, password_hasher: Optional[PasswordHasher] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        previous = runtime
        if previous is not None and previous.cache is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.close())
            else:
                loop.create_task(previous.close())
        runtime = Runtime(settings, password_hasher=password_hasher)
        return runtime
