"""In-memory representation of a queued job."""

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from app.models.queue_job import JobKind, JobStatus
from app.services.etsy.types import Owner


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Job:
    """One unit of queued work."""

    id: str
    owner: Owner
    kind: JobKind
    payload: dict = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    error: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    unverified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    scheduled_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        owner: Owner,
        payload: dict,
        kind: JobKind = JobKind.CREATE_LISTING,
        max_retries: int = 3,
    ) -> "Job":
        now = utcnow()
        return cls(
            id=str(uuid4()),
            owner=owner,
            kind=kind,
            payload=copy.deepcopy(payload),
            max_retries=max_retries,
            created_at=now,
            scheduled_at=now,
        )

    @property
    def result(self) -> Optional[dict]:
        return self.payload.get("result")

    def snapshot(self) -> "Job":
        """Detached copy safe to hand to callers."""
        return replace(self, payload=copy.deepcopy(self.payload))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "owner_id": self.owner.user_id,
            "shop_id": self.owner.shop_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "unverified": self.unverified,
            "result": self.result,
            "created_at": _iso(self.created_at),
            "scheduled_at": _iso(self.scheduled_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }
