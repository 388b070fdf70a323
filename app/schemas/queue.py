"""Upload queue schemas."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.models.queue_job import JobKind, JobStatus
from app.models.queue_media import MediaKind
from app.services.etsy.client import encode_tags


class ListingInventory(BaseModel):
    """Variation inventory applied after the draft is created."""

    products: list[dict[str, Any]] = Field(min_length=1)
    price_on_property: list[int] = Field(default_factory=list)
    quantity_on_property: list[int] = Field(default_factory=list)
    sku_on_property: list[int] = Field(default_factory=list)


class ListingPayload(BaseModel):
    """Listing fields and media references of a create-listing job."""

    title: str = Field(min_length=1, max_length=140)
    description: str = ""
    price: float = Field(gt=0)
    quantity: int = Field(default=1, ge=1, le=999)
    taxonomy_id: int
    tags: list[str] = Field(default_factory=list)
    materials: list[str] = Field(default_factory=list)
    who_made: Literal["i_did", "someone_else", "collective"] = "i_did"
    when_made: str = "made_to_order"
    is_supply: bool = False
    shop_id: Optional[int] = None
    shipping_profile_id: Optional[int] = None
    state: Literal["draft", "active"] = "draft"
    image_refs: list[str] = Field(default_factory=list, max_length=10)
    video_ref: Optional[str] = None
    variations: Optional[ListingInventory] = None

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, value: Any) -> list[str]:
        return encode_tags(value)

    def draft_fields(self, shipping_profile_id: int) -> dict[str, Any]:
        """Body of the create-draft call."""
        fields: dict[str, Any] = {
            "title": self.title,
            "description": self.description,
            "price": self.price,
            "quantity": self.quantity,
            "taxonomy_id": self.taxonomy_id,
            "who_made": self.who_made,
            "when_made": self.when_made,
            "is_supply": self.is_supply,
            "shipping_profile_id": shipping_profile_id,
        }
        if self.tags:
            fields["tags"] = self.tags
        if self.materials:
            fields["materials"] = self.materials
        return fields


class JobCreate(BaseModel):
    """Enqueue a job."""

    kind: JobKind = JobKind.CREATE_LISTING
    shop_id: Optional[int] = None
    payload: ListingPayload


class JobEnqueued(BaseModel):
    """Enqueue acknowledgement."""

    id: str
    status: JobStatus


class JobDetail(BaseModel):
    """Job detail."""

    id: str
    owner_id: str
    shop_id: Optional[int]
    kind: JobKind
    status: JobStatus
    progress: int
    error: Optional[str]
    retry_count: int
    max_retries: int
    unverified: bool
    result: Optional[dict[str, Any]]
    created_at: datetime
    scheduled_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]


class JobList(BaseModel):
    """Owner's jobs, newest first."""

    items: list[JobDetail]


class QueueStatusSummary(BaseModel):
    """Per-status counts plus the jobs in each bucket."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    jobs: dict[str, list[JobDetail]] = Field(default_factory=dict)


class ProcessNowResult(BaseModel):
    """Result of a manual queue tick."""

    dispatched: int


class QueueCleared(BaseModel):
    """Result of clearing finished jobs."""

    removed: int


class ProcessorState(BaseModel):
    """Whether the background queue poller is running."""

    running: bool
    interval_seconds: float


class MediaRegister(BaseModel):
    """Register a media blob; send ``data`` inline or declare ``chunks_count``."""

    mime_type: str
    filename: Optional[str] = None
    rank: int = Field(default=1, ge=1, le=10)
    chunks_count: int = Field(default=0, ge=0)
    data: Optional[str] = None


class MediaRegistered(BaseModel):
    """Registered media."""

    id: str
    kind: MediaKind
    mime_type: str
    chunks_count: int


class ChunkUpload(BaseModel):
    """One base64 chunk."""

    data: str = Field(min_length=1)


class ChunkStored(BaseModel):
    """Chunk acknowledgement."""

    media_id: str
    chunk_index: int


class WorkerRunResult(BaseModel):
    """Summary of one cron worker pass."""

    claimed: int
    completed: int
    retried: int
    failed: int
    cancelled: int
    unverified: int
    released: int = 0
    job_ids: list[str]
