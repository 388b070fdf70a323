"""APScheduler integration for the upload queue poller."""

from typing import Optional
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.services.queue.manager import QueueManager

logger = logging.getLogger(__name__)

POLL_JOB_ID = "upload_queue_poll"


async def poll_upload_queue(manager: QueueManager) -> None:
    """Background job that dispatches due jobs.

    Called periodically by the scheduler; errors are logged and never
    propagate into APScheduler.
    """
    try:
        dispatched = await manager.process_queue()
        if dispatched:
            logger.info(f"Poll job dispatched {dispatched} job(s)")
        else:
            logger.debug("Poll job found nothing to dispatch")
    except Exception as e:
        logger.error(f"Upload queue poll job failed: {e}", exc_info=True)


class QueueScheduler:
    """Owns the AsyncIOScheduler that ticks one QueueManager."""

    def __init__(self, manager: QueueManager, interval_seconds: float = 10.0):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None

    def get_scheduler(self) -> AsyncIOScheduler:
        """Get or create the scheduler instance."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler()
        return self._scheduler

    def start(self) -> None:
        """Start polling the queue every ``interval_seconds``.

        Overlapping ticks are dropped (``max_instances=1``) and missed ticks
        collapse into one (``coalesce=True``).
        """
        scheduler = self.get_scheduler()

        if scheduler.running:
            logger.warning("Scheduler already running")
            return

        scheduler.add_job(
            poll_upload_queue,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            args=[self.manager],
            id=POLL_JOB_ID,
            name="Dispatch pending upload jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        scheduler.start()
        logger.info(f"Started upload queue scheduler (interval: {self.interval_seconds}s)")

    def stop(self) -> None:
        """Stop the background scheduler gracefully."""
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Stopped upload queue scheduler")
        self._scheduler = None

    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running
