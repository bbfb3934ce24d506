"""Unit tests for the session-timeout monitor."""

import asyncio

import pytest

from tessera.service.errors import SessionPersistenceFailure
from tessera.service.session_monitor import SessionMonitor, TickOutcome
from tessera.service.tokens import TokenIssuer
from tessera.storage.models import Role


@pytest.fixture
def issuer(clock):
    return TokenIssuer("access-secret-A", "refresh-secret-B", clock=clock)


class Callbacks:
    def __init__(self, fail_refresh: bool = False):
        self.refreshed = []
        self.terminated = 0
        self.fail_refresh = fail_refresh

    async def on_refreshed(self, pair):
        if self.fail_refresh:
            raise SessionPersistenceFailure("db down")
        self.refreshed.append(pair)

    async def on_terminated(self):
        self.terminated += 1


def _monitor(issuer, callbacks, interval=60):
    return SessionMonitor(
        issuer,
        on_refreshed=callbacks.on_refreshed,
        on_terminated=callbacks.on_terminated,
        interval_seconds=interval,
    )


class TestTick:
    """Tests for a single monitor period."""

    async def test_valid_token_is_noop(self, issuer):
        """Nothing happens while the access token is valid."""
        callbacks = Callbacks()
        pair = issuer.issue("u-1", "a@example.com", Role.STANDARD_USER)
        monitor = _monitor(issuer, callbacks)
        monitor.update_tokens(pair.access_token, pair.refresh_token)

        assert await monitor.tick() == TickOutcome.IDLE
        assert callbacks.refreshed == [] and callbacks.terminated == 0

    async def test_expired_token_refreshes(self, issuer, clock):
        """An expired access token is rotated and the new pair adopted."""
        callbacks = Callbacks()
        pair = issuer.issue("u-1", "a@example.com", Role.STANDARD_USER)
        monitor = _monitor(issuer, callbacks)
        monitor.update_tokens(pair.access_token, pair.refresh_token)
        clock.advance(minutes=31)

        assert await monitor.tick() == TickOutcome.REFRESHED
        assert len(callbacks.refreshed) == 1
        assert monitor.access_token == callbacks.refreshed[0].access_token
        assert monitor.refresh_token != pair.refresh_token
        assert await monitor.tick() == TickOutcome.IDLE

    async def test_refresh_failure_terminates(self, issuer, clock):
        """An expired refresh token ends the session and cancels the monitor."""
        callbacks = Callbacks()
        pair = issuer.issue("u-1", "a@example.com", Role.STANDARD_USER)
        monitor = _monitor(issuer, callbacks)
        monitor.update_tokens(pair.access_token, pair.refresh_token)
        clock.advance(days=8)

        assert await monitor.tick() == TickOutcome.TERMINATED
        assert callbacks.terminated == 1
        assert monitor.cancelled is True
        assert await monitor.tick() == TickOutcome.CANCELLED
        assert callbacks.terminated == 1

    async def test_missing_refresh_token_terminates(self, issuer, clock):
        """Without a refresh token an expired session ends."""
        callbacks = Callbacks()
        pair = issuer.issue("u-1", "a@example.com", Role.STANDARD_USER)
        monitor = _monitor(issuer, callbacks)
        monitor.update_tokens(pair.access_token, None)
        clock.advance(minutes=31)

        assert await monitor.tick() == TickOutcome.TERMINATED

    async def test_persist_failure_terminates(self, issuer, clock):
        """If the rotated session cannot be stored the session ends."""
        callbacks = Callbacks(fail_refresh=True)
        pair = issuer.issue("u-1", "a@example.com", Role.STANDARD_USER)
        monitor = _monitor(issuer, callbacks)
        monitor.update_tokens(pair.access_token, pair.refresh_token)
        clock.advance(minutes=31)

        assert await monitor.tick() == TickOutcome.TERMINATED
        assert callbacks.terminated == 1

    async def test_cancel_during_refresh_discards_result(self, issuer, clock):
        """A logout that lands mid-refresh wins over the refresh result."""
        pair = issuer.issue("u-1", "a@example.com", Role.STANDARD_USER)
        terminated = []
        monitor = None

        async def on_refreshed(new_pair):
            monitor.cancel()

        async def on_terminated():
            terminated.append(True)

        monitor = SessionMonitor(issuer, on_refreshed=on_refreshed, on_terminated=on_terminated)
        monitor.update_tokens(pair.access_token, pair.refresh_token)
        clock.advance(minutes=31)

        assert await monitor.tick() == TickOutcome.CANCELLED
        assert monitor.access_token == pair.access_token
        assert terminated == []


class TestLifecycle:
    """Tests for the background task."""

    async def test_loop_runs_and_cancels(self, issuer, clock):
        """The task ticks periodically until cancelled."""
        callbacks = Callbacks()
        pair = issuer.issue("u-1", "a@example.com", Role.STANDARD_USER)
        monitor = _monitor(issuer, callbacks, interval=0.01)
        monitor.start(pair.access_token, pair.refresh_token)
        assert monitor.running

        clock.advance(minutes=31)
        for _ in range(50):
            await asyncio.sleep(0.01)
            if callbacks.refreshed:
                break
        assert len(callbacks.refreshed) >= 1

        monitor.cancel()
        monitor.cancel()
        await asyncio.sleep(0)
        assert not monitor.running
        with pytest.raises(RuntimeError):
            monitor.start(pair.access_token, pair.refresh_token)

    async def test_loop_stops_after_termination(self, issuer, clock):
        """A terminated session stops its own task."""
        callbacks = Callbacks()
        pair = issuer.issue("u-1", "a@example.com", Role.STANDARD_USER)
        monitor = _monitor(issuer, callbacks, interval=0.01)
        monitor.start(pair.access_token, pair.refresh_token)
        clock.advance(days=8)
        for _ in range(50):
            await asyncio.sleep(0.01)
            if callbacks.terminated:
                break
        await asyncio.sleep(0.05)
        assert callbacks.terminated == 1
        assert monitor.cancelled

    def test_cancel_without_loop(self, issuer):
        """Cancelling an unstarted monitor outside any event loop is safe."""
        monitor = _monitor(issuer, Callbacks())
        monitor.cancel()
        assert monitor.cancelled
