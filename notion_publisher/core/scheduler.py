"""Fixed-interval background trigger for sync runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Calls ``job`` every ``interval`` seconds until stopped.

    A failing run is logged and the next tick tries again. The first run
    starts immediately.
    """

    def __init__(self, job: Callable[[], Awaitable[Any]], interval: float) -> None:
        self._job = job
        self._interval = interval
        self._task: asyncio.Task | None = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._interval <= 0:
            logger.info("Scheduled sync disabled (interval <= 0)")
            return
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="sync-scheduler")
        logger.info(f"Scheduled sync every {self._interval:.0f}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            self.ticks += 1
            try:
                await self._job()
            except Exception as e:
                logger.error(f"Scheduled sync failed: {type(e).__name__}: {e}")
            await asyncio.sleep(self._interval)
