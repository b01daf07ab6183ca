from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlsplit, urlunsplit

from redis.exceptions import RedisError

from gatekeep.config import SigningKeys, get_settings, reset_settings_cache
from gatekeep.logging import get_logger
from gatekeep.service.auth import AuthService
from gatekeep.service.authenticator import RequestAuthenticator
from gatekeep.service.codes import OneTimeCodes
from gatekeep.service.email import LogMailer
from gatekeep.service.tokens import TokenAuthority
from gatekeep.service.user_cache import CachedUserDirectory
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.memory_cache import MemoryCache
from gatekeep.storage.postgres import PostgresStore
from gatekeep.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Hide the password in a connection URL before it is logged.

    ``redis://:s3cret@cache:6379/0`` becomes ``redis://:***@cache:6379/0``.
    """
    if not url:
        return url
    try:
        parts = urlsplit(url)
        if not parts.password:
            return url
        host = parts.netloc.rpartition("@")[2]
        return urlunsplit(parts._replace(netloc=f"{parts.username or ''}:***@{host}"))
    except ValueError:
        return "***unparseable-url***"


class Runtime:
    """Process-wide wiring of stores, token authority and services.

    The durable store and the key-value cache are chosen from settings; every
    service receives its collaborators explicitly.
    """

    def __init__(self):
        self.settings = get_settings()
        self.store: Union[MemoryStore, PostgresStore] = self._build_store()
        self.cache: Union[RedisCache, SyncRedisCache, MemoryCache] = self._build_cache()
        self.signing_keys = SigningKeys.load(self.settings)

        # token issuance reads the durable store so claims carry the current role
        self.tokens = TokenAuthority(
            self.store,
            self.cache,
            self.signing_keys,
            issuer=self.settings.token_issuer,
            audience=self.settings.token_audience,
            access_token_ttl=self.settings.access_token_ttl_seconds,
            refresh_token_ttl=self.settings.refresh_token_ttl_seconds,
        )
        self.users = CachedUserDirectory(
            self.store, self.cache, ttl=self.settings.user_cache_ttl_seconds
        )
        self.authenticator = RequestAuthenticator(self.tokens, self.users)
        self.codes = OneTimeCodes(
            self.cache,
            verification_ttl=self.settings.email_verification_ttl_seconds,
            reset_ttl=self.settings.password_reset_ttl_seconds,
            max_reset_attempts=self.settings.password_reset_max_attempts,
        )
        # TEST_MODE keeps sent codes in memory so tests can complete the flows
        self.mailer = LogMailer(
            reveal_codes=self.settings.email_log_codes,
            keep_outbox=self.settings.test_mode,
        )
        self.auth = AuthService(
            self.users,
            self.tokens,
            default_role=self.settings.default_role,
            codes=self.codes,
            mailer=self.mailer,
        )
        logger.info(
            "runtime_ready",
            store=type(self.store).__name__,
            cache=type(self.cache).__name__,
            jwt_algorithm=self.signing_keys.algorithm,
            access_ttl=self.settings.access_token_ttl_seconds,
            user_cache_ttl=self.settings.user_cache_ttl_seconds,
        )

    def _build_store(self) -> Union[MemoryStore, PostgresStore]:
        settings = self.settings
        if settings.use_memory_store:
            # tests get a fresh store per runtime; dev runs persist under SHARED_FS_ROOT
            return MemoryStore(fs_root=None if settings.test_mode else settings.shared_fs_root)
        try:
            return PostgresStore(settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _build_cache(self) -> Union[RedisCache, SyncRedisCache, MemoryCache]:
        settings = self.settings
        redis_error: Exception | None = None
        if settings.redis_url:
            # sync client under TEST_MODE: each test runs its own event loop
            cache_cls = SyncRedisCache if settings.test_mode else RedisCache
            cache = cache_cls(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
            try:
                cache.verify_connection()
                return cache
            except RedisError as exc:
                redis_error = exc

        if not (settings.test_mode or settings.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis is required for token revocation and the user cache; start Redis "
                "or set TEST_MODE/ALLOW_REDIS_FALLBACK_DEV to use the in-process cache"
            ) from redis_error
        logger.warning(
            "redis_fallback_in_process",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return MemoryCache()

    async def close(self) -> None:
        """Release the Redis pool and the Postgres pool."""
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
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
        if runtime is not None:
            try:
                asyncio.get_running_loop().create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
