"""Cron-triggered upload worker.

Each ``run_once()`` claims a bounded batch of durably pending jobs and runs
them through the same state machine as the in-process queue, with the
post-upload verification poll enabled. Claiming is an atomic
pending-to-processing transition, so overlapping invocations never pick
up the same row.
"""

from dataclasses import dataclass, field
from datetime import timedelta
import logging

from app.models.queue_job import JobKind
from app.services.queue.state_machine import JobHandler, JobOutcome, run_job, unsupported_kind
from app.services.queue.store import JobStore
from app.services.queue.types import Job

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunSummary:
    """Counts from one worker pass."""

    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    cancelled: int = 0
    unverified: int = 0
    released: int = 0
    job_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "unverified": self.unverified,
            "released": self.released,
            "job_ids": list(self.job_ids),
        }


class ExternalUploadWorker:
    """Processes durable pending jobs when an external scheduler calls in."""

    def __init__(
        self,
        store: JobStore,
        handlers: dict[JobKind, JobHandler],
        batch_size: int = 5,
        retry_delay: timedelta = timedelta(seconds=30),
    ):
        self.store = store
        self.handlers = handlers
        self.batch_size = batch_size
        self.retry_delay = retry_delay

    async def run_once(self) -> WorkerRunSummary:
        """Claim and process one batch sequentially."""
        summary = WorkerRunSummary()
        jobs = await self.store.claim_due(self.batch_size)
        summary.claimed = len(jobs)
        if not jobs:
            logger.debug("No pending upload jobs")
            return summary

        logger.info(f"Upload worker claimed {len(jobs)} job(s)")
        summary.job_ids = [job.id for job in jobs]
        for index, job in enumerate(jobs):
            handler = self.handlers.get(job.kind)
            if handler is None:
                logger.error(f"No handler for job {job.id} of kind {job.kind.value}")
                handler = unsupported_kind

            try:
                outcome = await run_job(
                    job,
                    handler,
                    self.store,
                    retry_delay=self.retry_delay,
                    verify_uploads=True,
                )
            except Exception as e:
                # The store is failing; hand this job and the rest of the
                # batch back instead of leaving them claimed
                logger.error(f"Could not record job {job.id}: {e}", exc_info=True)
                summary.released = await self._release(jobs[index:])
                break
            if outcome == JobOutcome.COMPLETED:
                summary.completed += 1
                if job.unverified:
                    summary.unverified += 1
            elif outcome == JobOutcome.RETRY:
                summary.retried += 1
            elif outcome == JobOutcome.FAILED:
                summary.failed += 1
            elif outcome == JobOutcome.CANCELLED:
                summary.cancelled += 1

        logger.info(
            f"Upload worker finished: {summary.completed} completed "
            f"({summary.unverified} unverified), {summary.retried} retried, "
            f"{summary.failed} failed, {summary.released} released"
        )
        return summary

    async def _release(self, jobs: list[Job]) -> int:
        try:
            return await self.store.release(jobs, delay=self.retry_delay)
        except Exception as e:
            logger.error(
                f"Could not release {len(jobs)} claimed job(s); they stay processing "
                f"until stale recovery: {e}",
                exc_info=True,
            )
            return 0
