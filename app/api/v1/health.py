"""Health check endpoint."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_pipeline
from app.services.pipeline import UploadPipeline

router = APIRouter()


class HealthResponse(BaseModel):
    """Liveness and queue overview."""

    status: str
    scheduler_running: bool
    processing: int
    max_concurrent: int
    daily_api_calls_remaining: int


@router.get("", response_model=HealthResponse)
async def health(pipeline: UploadPipeline = Depends(get_pipeline)) -> HealthResponse:
    """Report liveness."""
    stats = pipeline.queue.stats()
    return HealthResponse(
        status="ok",
        scheduler_running=pipeline.scheduler.is_running(),
        processing=stats["processing"],
        max_concurrent=stats["max_concurrent"],
        daily_api_calls_remaining=pipeline.rate_limiter.daily_remaining,
    )
