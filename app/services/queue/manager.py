"""In-process upload queue.

Jobs are persisted through the ``JobStore`` and dispatched by
``process_queue()``, which a recurring timer calls and which ``add_job``
also triggers out of band. At most ``max_concurrent`` jobs are awaiting
I/O at any time; each runs as its own task.
"""

import asyncio
from datetime import timedelta
from typing import Any, Coroutine, Optional
import logging

from app.models.queue_job import JobKind, JobStatus
from app.services.etsy.errors import PayloadValidationError
from app.services.etsy.types import Owner
from app.services.queue.state_machine import (
    CancellationToken,
    InvalidTransitionError,
    JobHandler,
    JobOutcome,
    cancel,
    run_job,
    unsupported_kind,
)
from app.services.queue.store import JobStore
from app.services.queue.types import Job

logger = logging.getLogger(__name__)


class QueueManager:
    """Dispatches pending jobs to their handlers with a concurrency ceiling."""

    def __init__(
        self,
        store: JobStore,
        handlers: dict[JobKind, JobHandler],
        max_concurrent: int = 3,
        max_retries: int = 3,
        retry_delay: timedelta = timedelta(seconds=30),
        stale_after: timedelta = timedelta(minutes=30),
        auto_trigger: bool = True,
        verify_uploads: bool = False,
    ):
        """Initialize the queue.

        Args:
            store: Job persistence
            handlers: Handler per job kind
            max_concurrent: Ceiling on jobs processing at once
            max_retries: Retry budget given to new jobs
            retry_delay: Wait before a failed job is due again
            stale_after: Age after which a processing row counts as abandoned
            auto_trigger: Poll immediately on enqueue and when a slot frees up
            verify_uploads: Run the post-upload verification poll
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store
        self.handlers = handlers
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.stale_after = stale_after
        self.auto_trigger = auto_trigger
        self.verify_uploads = verify_uploads

        self._processing: dict[str, CancellationToken] = {}
        self._tasks: set[asyncio.Task] = set()
        self._is_processing_queue = False

        self.peak_concurrency = 0
        self.dispatched_total = 0

    @property
    def processing_count(self) -> int:
        return len(self._processing)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def trigger(self) -> None:
        """Schedule a queue tick on the running loop without awaiting it."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._spawn(self._process_queue_logged())

    async def _process_queue_logged(self) -> None:
        try:
            await self.process_queue()
        except Exception as e:
            logger.error(f"Queue tick failed: {e}", exc_info=True)

    async def add_job(
        self,
        owner: Owner,
        payload: dict,
        kind: JobKind = JobKind.CREATE_LISTING,
    ) -> str:
        """Persist a new pending job and return its id.

        Raises:
            PayloadValidationError: If no handler exists for ``kind``
        """
        if kind not in self.handlers:
            raise PayloadValidationError(f"No handler registered for job kind {kind.value}")

        job = Job.new(owner, payload, kind=kind, max_retries=self.max_retries)
        await self.store.create(job)
        logger.info(f"Queued {kind.value} job {job.id} for {owner}")

        if self.auto_trigger:
            self.trigger()
        return job.id

    async def process_queue(self) -> int:
        """Dispatch due pending jobs into free slots.

        A call made while another call is still running returns 0 without
        touching the queue.

        Returns:
            Number of jobs dispatched
        """
        if self._is_processing_queue:
            logger.debug("Queue tick already in progress, skipping")
            return 0

        self._is_processing_queue = True
        try:
            slots = self.max_concurrent - len(self._processing)
            if slots <= 0:
                return 0

            jobs = await self.store.claim_due(slots, exclude=list(self._processing))
            for job in jobs:
                cancellation = CancellationToken()
                self._processing[job.id] = cancellation
                self.peak_concurrency = max(self.peak_concurrency, len(self._processing))
                self.dispatched_total += 1
                self._spawn(self.process_job(job, cancellation))

            if jobs:
                logger.info(
                    f"Dispatched {len(jobs)} job(s), {len(self._processing)}/"
                    f"{self.max_concurrent} slots busy"
                )
            return len(jobs)
        finally:
            self._is_processing_queue = False

    async def process_job(
        self, job: Job, cancellation: Optional[CancellationToken] = None
    ) -> JobOutcome:
        """Run one attempt of a claimed job; always frees its slot."""
        if cancellation is None:
            cancellation = self._processing.setdefault(job.id, CancellationToken())
        try:
            handler = self.handlers.get(job.kind) or unsupported_kind
            return await run_job(
                job,
                handler,
                self.store,
                cancellation=cancellation,
                retry_delay=self.retry_delay,
                verify_uploads=self.verify_uploads,
            )
        except Exception as e:
            logger.error(f"Could not record job {job.id}: {e}", exc_info=True)
            await self._release(job)
            return JobOutcome.RELEASED
        finally:
            self._processing.pop(job.id, None)
            if self.auto_trigger:
                self.trigger()

    async def get_job_status(self, job_id: str) -> Optional[Job]:
        job = await self.store.get(job_id)
        return job.snapshot() if job else None

    async def get_jobs_for_owner(self, owner_id: str) -> list[Job]:
        return await self.store.list_for_owner(owner_id)

    async def get_status_summary(self, owner_id: str) -> dict:
        """Counts per status plus the jobs in each bucket."""
        jobs = await self.get_jobs_for_owner(owner_id)
        summary: dict[str, Any] = {status.value: 0 for status in JobStatus}
        buckets: dict[str, list[dict]] = {status.value: [] for status in JobStatus}
        for job in jobs:
            summary[job.status.value] += 1
            buckets[job.status.value].append(job.to_dict())
        summary["jobs"] = buckets
        return summary

    async def cancel_job(self, job_id: str, owner_id: Optional[str] = None) -> Optional[Job]:
        """Cancel a pending job now, or ask a running one to stop.

        Returns:
            The job snapshot, or None if it does not exist for this owner

        Raises:
            InvalidTransitionError: If the job already finished or is being
                processed outside this queue
        """
        job = await self.store.get(job_id)
        if job is None or (owner_id is not None and job.owner.user_id != owner_id):
            return None

        if job.status.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is already {job.status.value}")

        cancellation = self._processing.get(job_id)
        if cancellation is not None:
            cancellation.cancel()
            logger.info(f"Cancellation requested for running job {job_id}")
            return job.snapshot()

        if job.status != JobStatus.PENDING:
            raise InvalidTransitionError(f"Job {job_id} is being processed by another worker")

        cancelled = job.snapshot()
        cancel(cancelled, "Cancelled by user")
        if not await self.store.cancel_pending(cancelled):
            raise InvalidTransitionError(f"Job {job_id} is being processed by another worker")
        logger.info(f"Cancelled pending job {job_id}")
        return cancelled.snapshot()

    async def clear_finished(self, owner_id: str) -> int:
        """Delete the owner's completed, failed and cancelled jobs."""
        count = await self.store.clear_finished(owner_id)
        logger.info(f"Cleared {count} finished job(s) for user {owner_id}")
        return count

    async def _release(self, job: Job) -> None:
        try:
            await self.store.release([job], delay=self.retry_delay)
        except Exception as e:
            logger.error(
                f"Could not release job {job.id}; it stays processing until stale "
                f"recovery: {e}",
                exc_info=True,
            )

    async def recover_stale(self) -> int:
        """Return processing rows abandoned by a previous process to pending."""
        return await self.store.recover_stale(self.stale_after)

    async def wait_idle(self) -> None:
        """Wait until every dispatched task (and any tick it triggered) finishes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> dict:
        return {
            "processing": len(self._processing),
            "max_concurrent": self.max_concurrent,
            "peak_concurrency": self.peak_concurrency,
            "dispatched_total": self.dispatched_total,
        }
