"""Background scheduler for the orphaned event queue.

A single asyncio task wakes every ``interval`` seconds and runs one queue
batch in a worker thread, so the event loop never blocks on the database.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from outreach_events.services.dead_letter_store import DeadLetterStore
from outreach_events.services.orphaned_queue import BatchResult, OrphanedEventQueue

logger = logging.getLogger(__name__)

# Expired dead letters are purged every Nth tick.
PURGE_EVERY_TICKS = 360


class OrphanedQueueScheduler:
    """Drives ``OrphanedEventQueue.process_due`` on a fixed interval."""

    def __init__(
        self,
        queue: OrphanedEventQueue,
        interval: float = 10.0,
        dead_letters: Optional[DeadLetterStore] = None,
        drain_on_stop_seconds: float = 0.0,
    ):
        self.queue = queue
        self.interval = interval
        self.dead_letters = dead_letters
        self.drain_on_stop_seconds = drain_on_stop_seconds
        self.running = False
        self.ticks = 0
        self.last_tick_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    async def tick(self) -> BatchResult:
        """Run one batch off the event loop. Overlaps are skipped by the queue."""
        result = await asyncio.to_thread(self.queue.process_due)
        self.ticks += 1
        self.last_tick_at = self.queue.clock()
        if self.dead_letters is not None:
            await asyncio.to_thread(self.dead_letters.release_stale_replays)
            if self.ticks % PURGE_EVERY_TICKS == 1:
                await asyncio.to_thread(self.dead_letters.purge_expired)
        return result

    async def run(self) -> None:
        logger.info("Orphaned queue scheduler started (interval %.1fs)", self.interval)
        while self.running:
            try:
                await asyncio.sleep(self.interval)
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Orphaned queue tick failed: %s", exc, exc_info=True)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("Orphaned queue scheduler already running, ignoring start()")
            return
        self.running = True
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Cancel the loop, wait for the in-flight tick, then optionally drain."""
        self.running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("Orphaned queue scheduler task cancelled")
        # Cancelling does not stop a batch already running in a worker thread.
        await asyncio.to_thread(self.queue.wait_idle)
        if self.drain_on_stop_seconds > 0:
            await asyncio.to_thread(self.queue.drain, self.drain_on_stop_seconds)
        logger.info("Orphaned queue scheduler stopped after %d ticks", self.ticks)
