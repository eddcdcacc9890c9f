"""Background credential refresh on a fixed period."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from gdrive_mcp.binding import ApiClientBinding
from gdrive_mcp.lifecycle import CredentialManager

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = timedelta(minutes=45)
# Google access tokens are issued for one hour
DEFAULT_MIN_TOKEN_LIFETIME = timedelta(hours=1)


class RefreshScheduler:
    """Re-validates the credential every ``interval`` and rebinds it.

    Runs as a task on the server's event loop, next to request handling. A
    failed tick is logged and retried on the next tick; there is no immediate
    retry. Each tick asks for a record that outlives the next tick, so the
    interval must leave room for the refresh threshold within the shortest
    token lifetime.

    Args:
        manager: Lifecycle manager that produces the credential.
        binding: Receives each record the manager returns.
        interval: Time between ticks.
        min_token_lifetime: Shortest lifetime an access token is issued with.
        sleep: Awaitable sleep used between ticks.

    Raises:
        ValueError: ``interval`` is not shorter than
            ``min_token_lifetime - manager.threshold``.
    """

    def __init__(
        self,
        manager: CredentialManager,
        binding: ApiClientBinding,
        interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        min_token_lifetime: timedelta = DEFAULT_MIN_TOKEN_LIFETIME,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if interval <= timedelta(0):
            raise ValueError("Refresh interval must be positive")
        if interval >= min_token_lifetime - manager.threshold:
            raise ValueError(
                f"Refresh interval {interval} must be shorter than the token lifetime "
                f"{min_token_lifetime} minus the refresh threshold {manager.threshold}"
            )
        self._manager = manager
        self._binding = binding
        self._interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.tick_count = 0
        self.failure_count = 0
        self.last_error: Optional[Exception] = None

    @property
    def interval(self) -> timedelta:
        return self._interval

    @property
    def horizon(self) -> timedelta:
        """Lifetime a bound record needs so it outlives the next tick."""
        return self._interval + self._manager.threshold

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> bool:
        """Make one refresh attempt. Returns True when a credential was bound."""
        self.tick_count += 1
        try:
            record = await self._manager.ensure_valid_credential(min_remaining=self.horizon)
        except Exception as exc:
            self.failure_count += 1
            self.last_error = exc
            logger.error(
                "Error in automatic token refresh: %s",
                exc,
                extra={"event": "scheduler_tick_failed", "tick": self.tick_count},
            )
            return False

        # binding is in-memory; a failure here is a configuration bug and ends the task
        self._binding.bind(record)
        self.last_error = None
        logger.info("Refreshed credentials automatically")
        return True

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Sleep and tick until cancelled, or until ``max_ticks`` ticks ran."""
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            await self._sleep(self._interval.total_seconds())
            await self.tick()
            ticks += 1

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self.run(), name="credential-refresh")
        self._task.add_done_callback(self._on_done)
        logger.info("Credential refresh scheduled every %s", self._interval)
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    def _on_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.critical("Credential refresh scheduler stopped: %s", exc, exc_info=exc)
