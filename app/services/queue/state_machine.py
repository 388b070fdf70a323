"""Job lifecycle shared by the in-process queue and the cron worker.

    pending --begin--> processing --complete--> completed
    processing --fail(retryable, retries left)--> pending (retry_count + 1)
    processing --fail(retryable at bound | terminal)--> failed
    pending | processing --cancel--> cancelled

Completed, failed and cancelled jobs are never transitioned again.
"""

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional, Protocol
import logging

from app.models.queue_job import JobStatus
from app.services.etsy.errors import (
    EtsyAPIError,
    JobCancelledError,
    PayloadValidationError,
    UnknownAPIError,
)
from app.services.queue.store import JobStore
from app.services.queue.types import Job, utcnow

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """Requested transition is not allowed from the job's current status."""


class JobOutcome(str, enum.Enum):
    """Result of one attempt."""

    COMPLETED = "completed"
    RETRY = "retry"
    FAILED = "failed"
    CANCELLED = "cancelled"
    # Outcome could not be recorded; the claim was handed back
    RELEASED = "released"


class CancellationToken:
    """Cooperative cancellation flag checked by handlers between sub-steps."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError("Job cancelled")


class ProgressReporter:
    """Persists monotonically non-decreasing progress for one attempt."""

    def __init__(self, job: Job, store: JobStore):
        self.job = job
        self.store = store
        self.history: list[int] = []

    async def report(self, value: int) -> int:
        value = max(0, min(100, int(value)))
        if value <= self.job.progress:
            return self.job.progress
        self.job.progress = value
        self.history.append(value)
        await self.store.save(self.job)
        return value


@dataclass
class JobContext:
    """What a handler gets besides the job itself."""

    job: Job
    store: JobStore
    reporter: ProgressReporter
    cancellation: CancellationToken = field(default_factory=CancellationToken)
    verify_uploads: bool = False

    async def report(self, value: int) -> int:
        return await self.reporter.report(value)

    def checkpoint(self) -> None:
        self.cancellation.raise_if_cancelled()

    async def save_payload(self, **updates: Any) -> None:
        """Record intermediate results so a retry can resume instead of redo."""
        self.job.payload.update(updates)
        await self.store.save(self.job)


class JobHandler(Protocol):
    async def __call__(self, job: Job, context: JobContext) -> dict: ...


def _ensure_not_terminal(job: Job, action: str) -> None:
    if job.status.is_terminal:
        raise InvalidTransitionError(f"Cannot {action} job {job.id} in status {job.status.value}")


def begin_attempt(job: Job) -> None:
    _ensure_not_terminal(job, "start")
    job.status = JobStatus.PROCESSING
    job.progress = 0
    job.started_at = utcnow()
    job.completed_at = None


def complete(job: Job, result: dict, unverified: bool = False) -> None:
    _ensure_not_terminal(job, "complete")
    job.status = JobStatus.COMPLETED
    job.progress = 100
    job.unverified = unverified
    job.error = None
    job.payload["result"] = result
    job.completed_at = utcnow()


def fail(job: Job, error: BaseException, retry_delay: timedelta = timedelta(0)) -> JobOutcome:
    """Apply a failed attempt.

    Args:
        job: Job in processing
        error: What the handler raised
        retry_delay: How long a retried job waits before it is due again

    Returns:
        RETRY if the job went back to pending, otherwise FAILED or CANCELLED
    """
    if isinstance(error, JobCancelledError):
        cancel(job, str(error) or "Job cancelled")
        return JobOutcome.CANCELLED

    _ensure_not_terminal(job, "fail")
    job.error = getattr(error, "message", None) or str(error) or type(error).__name__

    retryable = getattr(error, "is_retryable", False)
    if retryable and job.retry_count < job.max_retries:
        job.retry_count += 1
        job.status = JobStatus.PENDING
        job.progress = 0
        job.scheduled_at = utcnow() + retry_delay
        return JobOutcome.RETRY

    job.status = JobStatus.FAILED
    job.completed_at = utcnow()
    return JobOutcome.FAILED


def cancel(job: Job, reason: str = "Job cancelled") -> None:
    _ensure_not_terminal(job, "cancel")
    job.status = JobStatus.CANCELLED
    job.error = reason
    job.completed_at = utcnow()


async def run_job(
    job: Job,
    handler: JobHandler,
    store: JobStore,
    *,
    cancellation: Optional[CancellationToken] = None,
    retry_delay: timedelta = timedelta(0),
    verify_uploads: bool = False,
) -> JobOutcome:
    """Run one attempt of ``job`` and persist its outcome.

    The job is expected to be claimed already (pending or processing).
    Every exception other than task cancellation ends up as a recorded
    outcome; handler errors never escape.
    """
    cancellation = cancellation or CancellationToken()
    if cancellation.cancelled:
        cancel(job, "Job cancelled")
        await store.save(job)
        return JobOutcome.CANCELLED

    begin_attempt(job)
    await store.save(job)

    context = JobContext(
        job=job,
        store=store,
        reporter=ProgressReporter(job, store),
        cancellation=cancellation,
        verify_uploads=verify_uploads,
    )

    try:
        result = await handler(job, context)
    except (EtsyAPIError, JobCancelledError) as e:
        outcome = fail(job, e, retry_delay)
    except Exception as e:
        logger.error(f"Unexpected error processing job {job.id}: {e}", exc_info=True)
        outcome = fail(job, UnknownAPIError(None, str(e) or type(e).__name__), retry_delay)
    else:
        complete(job, result, unverified=bool(result.get("unverified")))
        outcome = JobOutcome.COMPLETED

    await store.save(job)

    if outcome == JobOutcome.COMPLETED:
        suffix = " (unverified)" if job.unverified else ""
        logger.info(f"Job {job.id} completed{suffix}")
    elif outcome == JobOutcome.RETRY:
        logger.warning(
            f"Job {job.id} failed, retry {job.retry_count}/{job.max_retries} "
            f"at {job.scheduled_at.isoformat()}: {job.error}"
        )
    elif outcome == JobOutcome.FAILED:
        logger.error(f"Job {job.id} failed permanently: {job.error}")
    else:
        logger.info(f"Job {job.id} cancelled")
    return outcome


async def unsupported_kind(job: Job, context: JobContext) -> dict:
    """Stand-in handler for a job kind with nothing registered."""
    raise PayloadValidationError(f"No handler registered for job kind {job.kind.value}")
