"""Background sync scheduler for the mirror."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime
from typing import Any

from jira_db.mirror.sync import SyncEngine, SyncResult
from jira_db.utils.dates import format_timestamp, utcnow

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Periodic incremental sync driven by an asyncio task.

    The first run starts immediately; later runs wait ``interval_minutes``
    after the previous one finished. Stopping waits for an in-flight run so
    no sync_history row is left at ``running``.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_minutes: int | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Sync engine to drive
            interval_minutes: Minutes between runs; defaults to the engine's config
        """
        self.engine = engine
        self.interval_minutes = max(
            interval_minutes or engine.config.sync_interval_minutes, 1
        )
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._last_sync: datetime | None = None
        self._last_results: list[SyncResult] = []
        self._sync_count = 0
        self._error_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_minutes": self.interval_minutes,
            "last_sync": format_timestamp(self._last_sync),
            "sync_count": self._sync_count,
            "error_count": self._error_count,
            "last_results": [r.to_dict() for r in self._last_results],
        }

    async def start(self) -> None:
        if self.is_running:
            logger.warning("Scheduler is already running")
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Sync scheduler started, every {self.interval_minutes} minutes")

    async def stop(self) -> None:
        """Signal the loop and wait for the current run to end."""
        if self._task is None:
            return
        self._stop.set()
        if not self._task.done():
            logger.info("Waiting for the current sync to finish")
        await self._task
        self._task = None
        logger.info("Sync scheduler stopped")

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            await self._tick()
            try:
                await asyncio.wait_for(
                    self._stop.wait(), timeout=self.interval_minutes * 60
                )
            except asyncio.TimeoutError:
                pass

    async def _tick(self) -> None:
        try:
            results = await self.run_once()
        except Exception as e:
            self._error_count += 1
            logger.error(f"Scheduled sync crashed: {e}", exc_info=True)
            return

        failed = [r.project_key for r in results if not r.success]
        if failed:
            logger.warning(f"Scheduled sync failed for {', '.join(failed)}")
        logger.info(
            f"Scheduled sync #{self._sync_count}: "
            f"{sum(r.issues_synced for r in results)} issues across {len(results)} projects"
        )

    async def run_once(self) -> list[SyncResult]:
        """Sync every selected project now and record the outcome.

        Returns:
            One SyncResult per project
        """
        results = await self.engine.sync_projects()
        self._last_sync = utcnow()
        self._last_results = results
        self._sync_count += 1
        self._error_count += sum(1 for r in results if not r.success)
        return results


async def run_daemon(engine: SyncEngine, interval_minutes: int | None = None) -> None:
    """Run the scheduler in the foreground until SIGINT or SIGTERM."""
    scheduler = SyncScheduler(engine, interval_minutes=interval_minutes)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    await scheduler.start()
    try:
        await shutdown.wait()
        logger.info("Shutdown signal received")
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await scheduler.stop()
