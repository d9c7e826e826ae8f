"""Periodic auto-run driven by the stored global config.

When ``auto_run`` is on, a full run is executed every ``interval_ms`` and old
history is pruned to ``retention_days`` afterwards. The global config is
re-read before every cycle, so toggling it through the API takes effect
without a restart.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .defaults import DEFAULT_GLOBAL_CONFIG
from .models import Category, GlobalConfig, HealthCheckReport
from .scheduler import HealthCheckScheduler, new_run_id

if TYPE_CHECKING:
    from oumu_health.storage.repository import ReportRepository

logger = logging.getLogger(__name__)


class AutoRunner:
    """Background loop that triggers scheduled runs."""

    def __init__(
        self,
        scheduler: HealthCheckScheduler,
        repository: ReportRepository,
        idle_poll_seconds: float = 60.0,
    ) -> None:
        self.scheduler = scheduler
        self.repository = repository
        self.idle_poll_seconds = idle_poll_seconds
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="health-autorun")
        logger.info("Auto-run loop started")

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Auto-run loop stopped")

    async def _global_config(self) -> GlobalConfig:
        loop = asyncio.get_running_loop()
        stored = await loop.run_in_executor(None, self.repository.get_global_config)
        return stored or DEFAULT_GLOBAL_CONFIG

    async def tick(self) -> tuple[HealthCheckReport | None, float]:
        """One cycle: run if enabled, prune history.

        Returns the report (None when auto-run is off) and the number of
        seconds to wait before the next cycle.
        """
        config = await self._global_config()
        if not config.auto_run:
            return None, self.idle_poll_seconds

        report = await self.scheduler.execute(new_run_id(), list(Category))
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.repository.cleanup_old_data, config.retention_days)
        return report, config.interval_ms / 1000

    async def _loop(self) -> None:
        while self._running:
            try:
                _, delay = await self.tick()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Auto-run cycle failed")
                delay = self.idle_poll_seconds
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                break
