from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable, Optional

from tessera.logging import get_logger
from tessera.service.errors import SessionPersistenceFailure
from tessera.service.tokens import TokenIssuer
from tessera.storage.models import TokenPair

logger = get_logger(__name__)


class TickOutcome(str, Enum):
    IDLE = "idle"
    REFRESHED = "refreshed"
    TERMINATED = "terminated"
    CANCELLED = "cancelled"


class SessionMonitor:
    """Periodic access-token expiry check for one client session.

    Each tick is a no-op while the access token is valid. Once it has expired
    the monitor rotates the pair through the refresh token and hands the new
    pair to ``on_refreshed``. When no refresh is possible it cancels itself
    and calls ``on_terminated``, which is expected to log the client out.
    """

    def __init__(
        self,
        tokens: TokenIssuer,
        *,
        on_refreshed: Callable[[TokenPair], Awaitable[None]],
        on_terminated: Callable[[], Awaitable[None]],
        interval_seconds: float = 60,
    ) -> None:
        self.tokens = tokens
        self.interval_seconds = interval_seconds
        self._on_refreshed = on_refreshed
        self._on_terminated = on_terminated
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, access_token: str, refresh_token: Optional[str]) -> "SessionMonitor":
        """Begin periodic checks; the returned handle is the monitor itself."""
        if self._cancelled:
            raise RuntimeError("a cancelled session monitor cannot be restarted")
        self.update_tokens(access_token, refresh_token)
        if self.running:
            return self
        self._task = asyncio.create_task(self._run_loop())
        logger.info("session_monitor_started", interval_seconds=self.interval_seconds)
        return self

    def update_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        self.access_token = access_token
        self.refresh_token = refresh_token

    def cancel(self) -> None:
        """Stop the monitor; synchronous, idempotent and safe from inside its own task."""
        if self._cancelled:
            return
        self._cancelled = True
        task, self._task = self._task, None
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not None and task is not current and not task.done():
            task.cancel()
        logger.info("session_monitor_cancelled")

    async def tick(self) -> TickOutcome:
        if self._cancelled:
            return TickOutcome.CANCELLED
        if not self.access_token or not self.tokens.is_expired(self.access_token):
            return TickOutcome.IDLE

        pair = self.tokens.refresh(self.refresh_token) if self.refresh_token else None
        if pair is not None:
            try:
                await self._on_refreshed(pair)
            except SessionPersistenceFailure as exc:
                logger.error("session_monitor_persist_failed", error=str(exc))
                pair = None
        # A logout that landed while we were awaiting wins; drop the result
        if self._cancelled:
            return TickOutcome.CANCELLED
        if pair is not None:
            self.update_tokens(pair.access_token, pair.refresh_token)
            logger.info("session_monitor_refreshed")
            return TickOutcome.REFRESHED

        logger.info("session_monitor_expired")
        self.cancel()
        await self._on_terminated()
        return TickOutcome.TERMINATED

    async def _run_loop(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.interval_seconds)
            if self._cancelled:
                break
            try:
                outcome = await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "session_monitor_tick_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if outcome in (TickOutcome.TERMINATED, TickOutcome.CANCELLED):
                break
