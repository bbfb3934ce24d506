from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tessera.config import get_settings, reset_settings_cache
from tessera.logging import get_logger
from tessera.service.auth import AuthService
from tessera.service.notify import CodeNotifier, LoggingCodeNotifier
from tessera.storage.memory import MemoryStore
from tessera.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

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
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root holding the store, attempt log and auth service."""

    def __init__(self, *, notifier: Optional[CodeNotifier] = None):
        self.settings = get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(
            mfa_encryption_key=self.settings.mfa_secret_key or self.settings.access_token_secret,
            attempt_retention_seconds=self.settings.login_window_seconds,
        )

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, window_seconds=self.settings.login_window_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "Redis is configured but unreachable; fix REDIS_URL or unset it "
                        "to keep login attempts in the memory store."
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )

        self.notifier = notifier or LoggingCodeNotifier(
            from_name=self.settings.email_from_name,
            ttl_seconds=self.settings.otp_ttl_seconds,
            base_url=self.settings.app_base_url,
            reset_ttl_seconds=self.settings.password_reset_ttl_seconds,
        )
        self.auth = AuthService(
            self.store, self.settings, notifier=self.notifier, cache=self.cache
        )
        logger.info(
            "runtime_init_complete",
            attempt_log="redis" if self.cache else "memory",
        )

    async def close(self) -> None:
        """Release external connections; call when the application shuts down."""
        if self.cache is not None:
            await self.cache.close()
            self.cache = None


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, notifier: Optional[CodeNotifier] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(notifier=notifier)
        return runtime
