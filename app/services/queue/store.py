"""Durable job persistence with an in-memory index for fast polling.

The in-memory index holds the live ``Job`` objects the queue is mutating;
the repository is their durable mirror and the source for anything not in
memory (other owners' history, jobs from before a restart).
"""

import asyncio
from datetime import datetime, timedelta
from typing import Iterable, Optional, Protocol
import logging

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.queue_job import JobStatus, QueueJob
from app.services.etsy.types import Owner
from app.services.queue.types import Job, utcnow

logger = logging.getLogger(__name__)


class JobRepository(Protocol):
    """Durable storage for jobs."""

    async def insert(self, job: Job) -> None: ...

    async def update(self, job: Job) -> None: ...

    async def get(self, job_id: str) -> Optional[Job]: ...

    async def list_for_owner(self, owner_id: str) -> list[Job]: ...

    async def claim_due(self, limit: int, now: datetime, exclude: Iterable[str]) -> list[Job]: ...

    async def reset_stale(self, started_before: datetime) -> int: ...

    async def release(self, job_ids: Iterable[str], scheduled_at: datetime) -> int: ...

    async def cancel_pending(self, job: Job) -> bool: ...

    async def delete_finished(self, owner_id: str) -> int: ...


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


def _row_to_job(row: QueueJob) -> Job:
    return Job(
        id=row.id,
        owner=Owner(user_id=row.owner_id, shop_id=row.shop_id),
        kind=row.kind,
        payload=dict(row.payload or {}),
        status=row.status,
        progress=row.progress,
        error=row.error,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        unverified=row.unverified,
        created_at=row.created_at,
        scheduled_at=row.scheduled_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


def _job_values(job: Job) -> dict:
    return {
        "status": job.status,
        "progress": job.progress,
        "payload": job.payload,
        "error": job.error,
        "retry_count": job.retry_count,
        "max_retries": job.max_retries,
        "unverified": job.unverified,
        "scheduled_at": job.scheduled_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
    }


class SqlAlchemyJobRepository:
    """Job repository backed by the ``queue_jobs`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert(self, job: Job) -> None:
        async with self._session_factory() as db:
            db.add(
                QueueJob(
                    id=job.id,
                    owner_id=job.owner.user_id,
                    shop_id=job.owner.shop_id,
                    kind=job.kind,
                    created_at=job.created_at,
                    **_job_values(job),
                )
            )
            await db.commit()

    async def update(self, job: Job) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(QueueJob)
                .where(QueueJob.id == job.id)
                .values(**_job_values(job))
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._session_factory() as db:
            row = await db.get(QueueJob, job_id)
            return _row_to_job(row) if row else None

    async def list_for_owner(self, owner_id: str) -> list[Job]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(QueueJob)
                .where(QueueJob.owner_id == owner_id)
                .order_by(QueueJob.created_at.desc())
            )
            return [_row_to_job(row) for row in result.scalars().all()]

    async def claim_due(self, limit: int, now: datetime, exclude: Iterable[str]) -> list[Job]:
        """Atomically move up to ``limit`` due pending rows to processing.

        Rows locked by a concurrent claimer are skipped, so two claimers
        never receive the same row.
        """
        exclude = list(exclude)
        candidates = (
            select(QueueJob.id)
            .where(QueueJob.status == JobStatus.PENDING, QueueJob.scheduled_at <= now)
            .order_by(QueueJob.scheduled_at.asc(), QueueJob.created_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if exclude:
            candidates = candidates.where(QueueJob.id.notin_(exclude))

        async with self._session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    update(QueueJob)
                    .where(QueueJob.id.in_(candidates), QueueJob.status == JobStatus.PENDING)
                    .values(status=JobStatus.PROCESSING, started_at=now, progress=0)
                    .returning(QueueJob)
                    .execution_options(synchronize_session=False)
                )
                jobs = [_row_to_job(row) for row in result.scalars().all()]

        jobs.sort(key=lambda j: (j.scheduled_at, j.created_at))
        return jobs

    async def reset_stale(self, started_before: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                update(QueueJob)
                .where(
                    QueueJob.status == JobStatus.PROCESSING,
                    QueueJob.started_at < started_before,
                )
                .values(status=JobStatus.PENDING, progress=0, scheduled_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0

    async def release(self, job_ids: Iterable[str], scheduled_at: datetime) -> int:
        """Return claimed rows that were never recorded back to pending."""
        job_ids = list(job_ids)
        if not job_ids:
            return 0
        async with self._session_factory() as db:
            result = await db.execute(
                update(QueueJob)
                .where(QueueJob.id.in_(job_ids), QueueJob.status == JobStatus.PROCESSING)
                .values(status=JobStatus.PENDING, progress=0, scheduled_at=scheduled_at)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0

    async def cancel_pending(self, job: Job) -> bool:
        """Write a cancellation only if the row is still pending."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(QueueJob)
                .where(QueueJob.id == job.id, QueueJob.status == JobStatus.PENDING)
                .values(**_job_values(job))
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return bool(result.rowcount)

    async def delete_finished(self, owner_id: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                delete(QueueJob)
                .where(QueueJob.owner_id == owner_id, QueueJob.status.in_(TERMINAL_STATUSES))
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0


class InMemoryJobRepository:
    """Process-local job repository for development and tests."""

    def __init__(self) -> None:
        self._rows: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def insert(self, job: Job) -> None:
        async with self._lock:
            if job.id in self._rows:
                raise ValueError(f"Job {job.id} already exists")
            self._rows[job.id] = job.snapshot()

    async def update(self, job: Job) -> None:
        async with self._lock:
            if job.id not in self._rows:
                raise KeyError(job.id)
            self._rows[job.id] = job.snapshot()

    async def get(self, job_id: str) -> Optional[Job]:
        row = self._rows.get(job_id)
        return row.snapshot() if row else None

    async def list_for_owner(self, owner_id: str) -> list[Job]:
        rows = [r for r in self._rows.values() if r.owner.user_id == owner_id]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return [r.snapshot() for r in rows]

    async def claim_due(self, limit: int, now: datetime, exclude: Iterable[str]) -> list[Job]:
        excluded = set(exclude)
        async with self._lock:
            due = sorted(
                (
                    r
                    for r in self._rows.values()
                    if r.status == JobStatus.PENDING
                    and r.scheduled_at <= now
                    and r.id not in excluded
                ),
                key=lambda r: (r.scheduled_at, r.created_at),
            )[: max(limit, 0)]
            for row in due:
                row.status = JobStatus.PROCESSING
                row.started_at = now
                row.progress = 0
            return [row.snapshot() for row in due]

    async def reset_stale(self, started_before: datetime) -> int:
        async with self._lock:
            count = 0
            for row in self._rows.values():
                if (
                    row.status == JobStatus.PROCESSING
                    and row.started_at is not None
                    and row.started_at < started_before
                ):
                    row.status = JobStatus.PENDING
                    row.progress = 0
                    row.scheduled_at = utcnow()
                    count += 1
            return count

    async def release(self, job_ids: Iterable[str], scheduled_at: datetime) -> int:
        async with self._lock:
            count = 0
            for job_id in job_ids:
                row = self._rows.get(job_id)
                if row is not None and row.status == JobStatus.PROCESSING:
                    row.status = JobStatus.PENDING
                    row.progress = 0
                    row.scheduled_at = scheduled_at
                    count += 1
            return count

    async def cancel_pending(self, job: Job) -> bool:
        async with self._lock:
            row = self._rows.get(job.id)
            if row is None or row.status != JobStatus.PENDING:
                return False
            self._rows[job.id] = job.snapshot()
            return True

    async def delete_finished(self, owner_id: str) -> int:
        async with self._lock:
            finished = [
                job_id
                for job_id, row in self._rows.items()
                if row.owner.user_id == owner_id and row.status in TERMINAL_STATUSES
            ]
            for job_id in finished:
                del self._rows[job_id]
            return len(finished)

    def rows(self) -> list[Job]:
        return [r.snapshot() for r in self._rows.values()]


class JobStore:
    """Job persistence facade with an in-memory index."""

    def __init__(self, repository: JobRepository, max_index_size: int = 1000):
        self._repo = repository
        self._index: dict[str, Job] = {}
        self._max_index_size = max_index_size
        self._lock = asyncio.Lock()

    def _remember(self, job: Job) -> Job:
        current = self._index.get(job.id)
        if current is not None and current is not job and not current.status.is_terminal:
            # Keep the live object that in-flight code is mutating
            return current
        self._index[job.id] = job
        if len(self._index) > self._max_index_size:
            for job_id in [k for k, v in self._index.items() if v.status.is_terminal]:
                if len(self._index) <= self._max_index_size:
                    break
                del self._index[job_id]
        return job

    async def create(self, job: Job) -> Job:
        await self._repo.insert(job)
        async with self._lock:
            return self._remember(job)

    async def save(self, job: Job) -> None:
        await self._repo.update(job)
        async with self._lock:
            self._index[job.id] = job

    async def get(self, job_id: str) -> Optional[Job]:
        """Index first, then the durable store (re-populating the index)."""
        job = self._index.get(job_id)
        if job is not None:
            return job
        job = await self._repo.get(job_id)
        if job is None:
            return None
        async with self._lock:
            return self._remember(job)

    async def list_for_owner(self, owner_id: str) -> list[Job]:
        """All of an owner's jobs from the durable store, newest first."""
        return await self._repo.list_for_owner(owner_id)

    async def claim_due(self, limit: int, exclude: Iterable[str] = ()) -> list[Job]:
        if limit <= 0:
            return []
        jobs = await self._repo.claim_due(limit, utcnow(), exclude)
        async with self._lock:
            for job in jobs:
                self._index[job.id] = job
        if jobs:
            logger.info(f"Claimed {len(jobs)} pending job(s)")
        return jobs

    async def recover_stale(self, older_than: timedelta) -> int:
        count = await self._repo.reset_stale(utcnow() - older_than)
        if count:
            async with self._lock:
                for job_id in [k for k, v in self._index.items() if v.status == JobStatus.PROCESSING]:
                    del self._index[job_id]
            logger.warning(f"Returned {count} stale processing job(s) to pending")
        return count

    async def release(self, jobs: Iterable[Job], delay: timedelta = timedelta(0)) -> int:
        """Put claimed jobs whose outcome could not be recorded back to pending.

        The index entries are dropped so the next read comes from the
        durable row.
        """
        job_ids = [job.id for job in jobs]
        count = await self._repo.release(job_ids, utcnow() + delay)
        for job_id in job_ids:
            self.evict(job_id)
        if count:
            logger.warning(f"Released {count} claimed job(s) back to pending")
        return count

    async def cancel_pending(self, job: Job) -> bool:
        """Persist ``job`` (already cancelled) if its row is still pending."""
        if await self._repo.cancel_pending(job):
            async with self._lock:
                self._index[job.id] = job
            return True
        # Another process claimed the row; the indexed copy is out of date
        self.evict(job.id)
        return False

    async def clear_finished(self, owner_id: str) -> int:
        """Delete an owner's completed, failed and cancelled jobs."""
        count = await self._repo.delete_finished(owner_id)
        async with self._lock:
            for job_id in [
                k
                for k, v in self._index.items()
                if v.owner.user_id == owner_id and v.status.is_terminal
            ]:
                del self._index[job_id]
        return count

    def evict(self, job_id: str) -> None:
        self._index.pop(job_id, None)
