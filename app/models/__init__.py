"""Database models package."""

from app.models.base import Base
from app.models.etsy_token import EtsyToken
from app.models.queue_job import JobKind, JobStatus, QueueJob
from app.models.queue_media import MediaKind, QueueMedia, QueueMediaChunk

__all__ = [
    "Base",
    "EtsyToken",
    "JobKind",
    "JobStatus",
    "QueueJob",
    "MediaKind",
    "QueueMedia",
    "QueueMediaChunk",
]
