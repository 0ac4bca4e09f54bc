from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from churchregistry.config import get_settings, reset_settings_cache
from churchregistry.logging import get_logger
from churchregistry.service.auth import AuthService
from churchregistry.service.lineage import LineageService
from churchregistry.service.login_throttle import LoginThrottle
from churchregistry.service.token_sweeper import RefreshTokenSweeper
from churchregistry.service.tokens import TokenIssuer
from churchregistry.storage.memory import MemoryStore
from churchregistry.storage.postgres import PostgresStore
from churchregistry.storage.redis_throttle import RedisAttemptCounter

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.redis: Optional[RedisAttemptCounter] = None
        if self.settings.redis_url:
            try:
                counter = RedisAttemptCounter(self.settings.redis_url)
                counter.verify_connection()
                self.redis = counter
            except (RedisError, OSError, ValueError) as exc:
                logger.warning(
                    "redis_unavailable",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                    message="login attempts are counted per process",
                )
        else:
            logger.info("redis_not_configured", message="login attempts are counted per process")

        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_minutes=self.settings.access_token_ttl_minutes,
            leeway_seconds=self.settings.jwt_clock_skew_seconds,
        )
        self.auth = AuthService(self.store, self.tokens, self.settings)
        self.lineage = LineageService(self.store)
        self.token_sweeper = RefreshTokenSweeper(
            self.store, interval_seconds=self.settings.refresh_sweep_interval_seconds
        )
        self.login_throttle = LoginThrottle(
            self.settings.login_rate_limit_per_minute, window_seconds=60, redis=self.redis
        )

        self._bootstrap_admin()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis is not None,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_minutes=self.settings.refresh_token_ttl_minutes,
            refresh_sweep_enabled=self.settings.refresh_sweep_enabled,
        )

    def _bootstrap_admin(self) -> None:
        username = self.settings.bootstrap_admin_username
        password = self.settings.bootstrap_admin_password
        if not username or not password:
            return
        user = self.auth.ensure_user(
            username,
            password,
            display_name=self.settings.bootstrap_admin_display_name,
            role="admin",
        )
        logger.info("bootstrap_admin_ready", user_id=user.id)

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a second check under the lock during creation.
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
        if runtime is not None and runtime.redis is not None:
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.redis.close())
            except RuntimeError:
                asyncio.run(runtime.redis.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime

