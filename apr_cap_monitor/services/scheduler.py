"""Daily timer with an explicit start/stop lifecycle."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


def _parse_run_at(run_at_utc: str) -> time:
    hours, minutes = run_at_utc.split(":")
    return time(int(hours), int(minutes), tzinfo=timezone.utc)


class DailyScheduler:
    """Runs ``job`` once a day at ``run_at_utc`` (``HH:MM``).

    The timer is an owned asyncio task: ``start`` creates it, ``stop``
    cancels it. A failing job is logged and the next day still runs.
    """

    def __init__(self, job: Job, run_at_utc: str = "00:00") -> None:
        self._job = job
        self._run_at = _parse_run_at(run_at_utc)
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_run_time(self, now: datetime | None = None) -> datetime:
        now = now or datetime.now(timezone.utc)
        candidate = datetime.combine(now.date(), self._run_at)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def start(self) -> None:
        if self.running:
            logger.warning("Scheduler already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            "Scheduler started; daily run at %s UTC, next run %s",
            self._run_at.strftime("%H:%M"),
            self.next_run_time().isoformat(),
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler stopped")

    async def wait(self) -> None:
        """Block until the scheduler is stopped."""
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def run_manually(self) -> object:
        """Run the job now, outside the timer. Errors propagate to the caller."""
        logger.info("Manual run triggered")
        return await self._job()

    async def _loop(self) -> None:
        while True:
            target = self.next_run_time()
            remaining = (target - datetime.now(timezone.utc)).total_seconds()
            while remaining > 0:
                await asyncio.sleep(remaining)
                remaining = (target - datetime.now(timezone.utc)).total_seconds()
            logger.info("Daily job triggered")
            try:
                await self._job()
            except Exception as e:
                logger.error("Error in daily job: %s", e)
