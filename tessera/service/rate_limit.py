from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from tessera.logging import get_logger
from tessera.storage.models import normalize_email, utcnow
from tessera.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AttemptLog(Protocol):
    def record_login_attempt(
        self,
        email: str,
        ip_address: Optional[str],
        succeeded: bool,
        attempted_at: Optional[datetime] = None,
    ) -> None: ...

    def count_failed_attempts_since(self, email: str, since: datetime) -> int: ...

    def oldest_failed_attempt_since(self, email: str, since: datetime) -> Optional[datetime]: ...


@dataclass(frozen=True)
class RateLimitStatus:
    is_blocked: bool
    remaining_attempts: int
    reset_at: Optional[datetime]


def reset_message(reset_at: Optional[datetime], now: datetime) -> str:
    """Human-readable lockout message; minutes round up, hours only past sixty minutes."""
    seconds = max(0.0, (reset_at - now).total_seconds()) if reset_at else 0.0
    minutes = max(1, math.ceil(seconds / 60))
    if minutes > 60:
        hours = minutes // 60
        wait = f"{hours} hour{'s' if hours != 1 else ''}"
    else:
        wait = f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"Too many failed attempts. Please try again in {wait}."


class RateLimiter:
    """Sliding-window count of failed logins per normalized email.

    Every attempt is appended to the store's attempt log. When a Redis cache is
    configured, failures are mirrored there and counted from it so that all
    processes share one view of the window.
    """

    def __init__(
        self,
        attempts: AttemptLog,
        *,
        cache: Optional[RedisCache] = None,
        max_failures: int = 5,
        window_seconds: int = 60 * 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.attempts = attempts
        self.cache = cache
        self.max_failures = max_failures
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock or utcnow

    def _now(self) -> datetime:
        return self._clock()

    async def check(self, email: str) -> RateLimitStatus:
        email = normalize_email(email)
        now = self._now()
        since = now - self.window
        if self.cache:
            count = await self.cache.count_failed_attempts_since(email, since)
            oldest = (
                await self.cache.oldest_failed_attempt_since(email, since) if count else None
            )
        else:
            count = self.attempts.count_failed_attempts_since(email, since)
            oldest = self.attempts.oldest_failed_attempt_since(email, since) if count else None
        return RateLimitStatus(
            is_blocked=count >= self.max_failures,
            remaining_attempts=max(0, self.max_failures - count),
            reset_at=oldest + self.window if oldest else None,
        )

    async def record_attempt(
        self, email: str, *, succeeded: bool, ip_address: Optional[str] = None
    ) -> None:
        email = normalize_email(email)
        now = self._now()
        self.attempts.record_login_attempt(email, ip_address, succeeded, now)
        if self.cache and not succeeded:
            await self.cache.record_failed_attempt(email, now)
        if not succeeded:
            logger.info("login_attempt_failed", ip_address=ip_address)

    def message_for(self, status: RateLimitStatus) -> str:
        return reset_message(status.reset_at, self._now())
