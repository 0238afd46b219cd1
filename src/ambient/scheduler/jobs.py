"""Scheduler for periodic tasks using pure asyncio.

Jobs:
- Idle check: stop the daemon after a long period without connections
- Expiry sweep: once per day at the configured hour
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ambient.config import AmbientConfig
    from ambient.core import Orchestrator

logger = logging.getLogger(__name__)


class Scheduler:
    """Simple asyncio-based scheduler for periodic tasks."""

    def __init__(
        self,
        orchestrator: Orchestrator,
        config: AmbientConfig,
        last_activity: Callable[[], float],
    ) -> None:
        self._orchestrator = orchestrator
        self._interval = config.daemon.check_interval
        self._idle_timeout = config.daemon.idle_timeout
        self._sweep_hour = config.daemon.sweep_hour
        self._last_activity = last_activity
        self._last_sweep_date: str | None = None

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Run scheduled jobs until shutdown_event is set."""
        logger.info(
            "Scheduler started (check=%ds, idle timeout=%ds, sweep@%02d:00)",
            self._interval,
            self._idle_timeout,
            self._sweep_hour,
        )

        while not shutdown_event.is_set():
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self._interval)
                break  # shutdown requested
            except asyncio.TimeoutError:
                pass  # interval elapsed, run jobs

            if self.idle_expired():
                logger.info("Idle timeout reached, shutting down")
                shutdown_event.set()
                break

            self.maybe_sweep(datetime.now())

        logger.info("Scheduler stopped.")

    def idle_expired(self, now: float | None = None) -> bool:
        now = now if now is not None else time.monotonic()
        return now - self._last_activity() > self._idle_timeout

    def maybe_sweep(self, now: datetime) -> bool:
        """Sweep once per day at the configured hour."""
        today = now.strftime("%Y-%m-%d")
        if now.hour != self._sweep_hour or self._last_sweep_date == today:
            return False
        self._last_sweep_date = today
        try:
            removed = self._orchestrator.lifecycle.sweep()
        except OSError as e:
            logger.error("Memory sweep failed: %s", e)
            return False
        logger.info("Daily sweep removed %d expired file(s)", removed)
        return True
