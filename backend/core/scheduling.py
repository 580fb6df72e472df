"""
Repeating background tasks on the running event loop.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class RepeatingTask:
    """
    Run an async callable every ``interval_seconds``.

    At most one run is in flight: a tick that arrives while the previous run
    is still executing is skipped, never queued behind it.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        interval_seconds: float,
        run_immediately: bool = True,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    async def _run(self) -> None:
        try:
            await self.func()
        except Exception as e:
            logger.error(f"Repeating task '{self.name}' failed: {e}")

    def start(self) -> None:
        """Schedule the task; must be called from a running event loop"""
        if self._scheduler is not None:
            return

        job_options = {}
        if self.run_immediately:
            job_options["next_run_time"] = datetime.now()

        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=self.name,
            name=self.name,
            max_instances=1,
            coalesce=True,
            **job_options,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"Started repeating task '{self.name}' every {self.interval_seconds}s")

    def stop(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info(f"Stopped repeating task '{self.name}'")
