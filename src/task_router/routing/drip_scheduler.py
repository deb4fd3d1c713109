"""Randomized-interval drip release of queued tasks plus a critical fast lane."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from collections.abc import Awaitable, Callable

from task_router.config import QueueSettings
from task_router.routing.admission_queue import AdmissionQueue
from task_router.routing.models import QueueItem

logger = logging.getLogger(__name__)

ExecuteQueued = Callable[[QueueItem], Awaitable[object]]


class DripScheduler:
    """Releases at most one queued item per drip tick.

    Overlapping ticks are skipped, not queued. Critical items are drained by a
    separate short-interval loop regardless of the drip cadence.
    """

    def __init__(
        self,
        *,
        queue: AdmissionQueue,
        execute: ExecuteQueued,
        settings: QueueSettings,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.execute = execute
        self.settings = settings
        self.is_processing = False
        self._random = rng or random.Random()  # noqa: S311
        self._sleep = sleep
        self._drip_task: asyncio.Task[None] | None = None
        self._critical_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._drip_task is not None and not self._drip_task.done()

    def next_interval_minutes(self) -> int:
        return self._random.randint(self.settings.drip_min_minutes, self.settings.drip_max_minutes)

    def start(self) -> None:
        """Start both loops on the running event loop; no-op when already running."""

        if self.is_running:
            logger.info("Drip scheduler already running")
            return
        self._drip_task = asyncio.create_task(self._drip_loop())
        self._critical_task = asyncio.create_task(self._critical_loop())
        logger.info("Drip scheduler started")

    async def stop(self) -> None:
        for task in (self._drip_task, self._critical_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._drip_task = None
        self._critical_task = None
        logger.info("Drip scheduler stopped")

    async def drip_once(self) -> QueueItem | None:
        """Release and execute one ready item; returns the item or None when skipped."""

        if self.is_processing:
            logger.info("Already processing a queued task, skipping drip")
            return None
        self.is_processing = True
        try:
            item = self.queue.process_next()
            if item is None:
                logger.debug("No queued tasks ready for processing")
                return None
            await self._run(item)
            return item
        finally:
            self.is_processing = False

    async def process_critical(self) -> int:
        """Execute every ready critical item immediately; returns how many ran."""

        if self.is_processing:
            return 0
        critical = self.queue.peek_critical()
        if not critical:
            return 0
        self.is_processing = True
        processed = 0
        try:
            logger.info("Found %d critical queued tasks, processing immediately", len(critical))
            for candidate in critical:
                item = self.queue.take(candidate.id)
                if item is None:
                    continue
                await self._run(item)
                processed += 1
        finally:
            self.is_processing = False
        return processed

    async def _run(self, item: QueueItem) -> None:
        try:
            logger.info("Executing queued task %s", item.id)
            await self.execute(item)
        except Exception as error:  # noqa: BLE001
            logger.warning("Queued task %s failed: %s", item.id, error)
            self.queue.mark_failed(item.id, str(error), item)
        else:
            logger.info("Queued task %s completed", item.id)

    async def _drip_loop(self) -> None:
        while True:
            interval_minutes = self.next_interval_minutes()
            logger.info("Next drip scheduled in %d minutes", interval_minutes)
            await self._sleep(interval_minutes * 60)
            await self.drip_once()

    async def _critical_loop(self) -> None:
        while True:
            await self._sleep(self.settings.critical_check_seconds)
            await self.process_critical()
