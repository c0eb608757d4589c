"""
Retention scheduler: prunes old samples at start-up and once a day.
"""

import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from fleetwatch.errors import StorageError
from fleetwatch.store import MetricStore

logger = logging.getLogger(__name__)

DEFAULT_RUN_AT = time(3, 0)


def next_run_after(now: datetime, run_at: time = DEFAULT_RUN_AT) -> datetime:
    """Next occurrence of the wall-clock time `run_at` strictly after `now`"""
    candidate = now.replace(
        hour=run_at.hour, minute=run_at.minute, second=0, microsecond=0
    )
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class RetentionScheduler:
    """
    Background task that deletes samples older than the retention window.

    Runs one pass when started (unless disabled), then sleeps until the next
    daily run time, prunes, and repeats. stop() wakes the sleep and waits up
    to `grace_seconds` for the task before cancelling it.
    """

    def __init__(
        self,
        store: MetricStore,
        retention_days: int = 90,
        run_at: time = DEFAULT_RUN_AT,
        prune_on_start: bool = True,
        grace_seconds: float = 10.0,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.retention_days = retention_days
        self.run_at = run_at
        self.prune_on_start = prune_on_start
        self.grace_seconds = grace_seconds
        self._clock = clock
        self._stop: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def prune(self) -> int:
        """Run one retention pass synchronously; StorageError propagates"""
        deleted = self.store.delete_older_than(timedelta(days=self.retention_days))
        logger.info(
            "Retention pass complete",
            extra={'context': {'deleted': deleted, 'retention_days': self.retention_days}}
        )
        return deleted

    async def prune_async(self) -> Optional[int]:
        """One pass in a worker thread; failures are logged and reported as None"""
        try:
            return await asyncio.to_thread(self.prune)
        except StorageError as e:
            logger.error(
                "Retention pass failed, will retry at next run",
                extra={'context': {'operation': e.operation, 'error': e.message}}
            )
            return None
        except Exception:
            # Keep the daily loop alive; the next run retries
            logger.exception("Unexpected error in retention pass")
            return None

    def seconds_until_next_run(self) -> float:
        now = self._clock()
        return max((next_run_after(now, self.run_at) - now).total_seconds(), 0.0)

    async def run(self) -> None:
        """Main scheduler loop; returns once stop() is requested"""
        if self._stop is None:
            self._stop = asyncio.Event()

        if self.prune_on_start:
            await self.prune_async()

        while not self._stop.is_set():
            delay = self.seconds_until_next_run()
            logger.debug("Next retention pass scheduled", extra={'context': {'in_seconds': delay}})
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=delay)
            except asyncio.TimeoutError:
                await self.prune_async()

        logger.info("Retention scheduler stopped")

    def start(self) -> asyncio.Task:
        """Start the loop as a task on the running event loop"""
        if self.running:
            return self._task
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self.run(), name='fleetwatch-retention')
        logger.info(
            "Retention scheduler started",
            extra={'context': {
                'retention_days': self.retention_days,
                'run_at': self.run_at.strftime('%H:%M')
            }}
        )
        return self._task

    async def stop(self) -> None:
        """Request shutdown and wait for the loop within the grace period"""
        if self._task is None:
            return
        if self._stop is not None:
            self._stop.set()

        done, _ = await asyncio.wait({self._task}, timeout=self.grace_seconds)
        if not done:
            logger.warning("Retention scheduler did not stop in time, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
