"""Listing upload queue.

This package provides:
- Job persistence with an in-memory index (JobStore)
- Shared job state machine used by both front-ends
- In-process QueueManager with a concurrency ceiling
- Cron-triggered ExternalUploadWorker
- Chunked media storage and reconstruction
"""

from app.services.queue.handlers import HANDLERS, CreateListingHandler, build_handlers
from app.services.queue.manager import QueueManager
from app.services.queue.media import (
    ChunkedMedia,
    DecodedMedia,
    InMemoryMediaRepository,
    MediaStore,
    SqlAlchemyMediaRepository,
)
from app.services.queue.scheduler import QueueScheduler
from app.services.queue.state_machine import (
    CancellationToken,
    InvalidTransitionError,
    JobContext,
    JobOutcome,
    run_job,
)
from app.services.queue.store import InMemoryJobRepository, JobStore, SqlAlchemyJobRepository
from app.services.queue.types import Job
from app.services.queue.worker import ExternalUploadWorker, WorkerRunSummary

__all__ = [
    # Store
    "Job",
    "JobStore",
    "InMemoryJobRepository",
    "SqlAlchemyJobRepository",
    # State machine
    "CancellationToken",
    "InvalidTransitionError",
    "JobContext",
    "JobOutcome",
    "run_job",
    # Handlers
    "HANDLERS",
    "CreateListingHandler",
    "build_handlers",
    # Media
    "ChunkedMedia",
    "DecodedMedia",
    "InMemoryMediaRepository",
    "MediaStore",
    "SqlAlchemyMediaRepository",
    # Front-ends
    "QueueManager",
    "QueueScheduler",
    "ExternalUploadWorker",
    "WorkerRunSummary",
]
