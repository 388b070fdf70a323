"""Upload queue endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.deps import get_current_owner, get_current_user, get_pipeline
from app.models.queue_job import JobStatus
from app.schemas.queue import (
    ChunkStored,
    ChunkUpload,
    JobCreate,
    JobDetail,
    JobEnqueued,
    JobList,
    MediaRegister,
    MediaRegistered,
    ProcessNowResult,
    ProcessorState,
    QueueCleared,
    QueueStatusSummary,
)
from app.services.etsy.errors import PayloadValidationError
from app.services.etsy.types import Owner
from app.services.pipeline import UploadPipeline
from app.services.queue.state_machine import InvalidTransitionError

router = APIRouter()


@router.post("/jobs", response_model=JobEnqueued, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    body: JobCreate,
    owner: Owner = Depends(get_current_owner),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> JobEnqueued:
    """Queue a listing for upload and return immediately."""
    if body.shop_id is not None:
        owner = Owner(user_id=owner.user_id, shop_id=body.shop_id)
    if owner.shop_id is None and body.payload.shop_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Etsy shop selected",
        )

    try:
        job_id = await pipeline.queue.add_job(
            owner, body.payload.model_dump(mode="json", exclude_none=True), kind=body.kind
        )
    except PayloadValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    return JobEnqueued(id=job_id, status=JobStatus.PENDING)


@router.get("/jobs", response_model=JobList)
async def list_jobs(
    user_id: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> JobList:
    """List the caller's jobs, newest first."""
    jobs = await pipeline.queue.get_jobs_for_owner(user_id)
    return JobList(items=[JobDetail(**job.to_dict()) for job in jobs])


@router.delete("/jobs", response_model=QueueCleared)
async def clear_finished_jobs(
    user_id: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> QueueCleared:
    """Delete the caller's completed, failed and cancelled jobs."""
    return QueueCleared(removed=await pipeline.queue.clear_finished(user_id))


@router.get("/jobs/{job_id}", response_model=JobDetail)
async def get_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> JobDetail:
    """Get a job's status and progress."""
    job = await pipeline.queue.get_job_status(job_id)
    if job is None or job.owner.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobDetail(**job.to_dict())


@router.post("/jobs/{job_id}/cancel", response_model=JobDetail)
async def cancel_job(
    job_id: str,
    user_id: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> JobDetail:
    """Cancel a pending job, or stop a running one at its next step."""
    try:
        job = await pipeline.queue.cancel_job(job_id, owner_id=user_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobDetail(**job.to_dict())


@router.get("/status", response_model=QueueStatusSummary)
async def queue_status(
    user_id: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> QueueStatusSummary:
    """Counts per status plus the jobs in each bucket."""
    return QueueStatusSummary(**await pipeline.queue.get_status_summary(user_id))


@router.post("/process-now", response_model=ProcessNowResult)
async def process_now(
    _: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> ProcessNowResult:
    """Run one queue tick without waiting for the poller."""
    return ProcessNowResult(dispatched=await pipeline.queue.process_queue())


def _processor_state(pipeline: UploadPipeline) -> ProcessorState:
    return ProcessorState(
        running=pipeline.scheduler.is_running(),
        interval_seconds=pipeline.scheduler.interval_seconds,
    )


@router.get("/processor", response_model=ProcessorState)
async def processor_status(
    _: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> ProcessorState:
    return _processor_state(pipeline)


@router.post("/processor/start", response_model=ProcessorState)
async def start_processor(
    _: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> ProcessorState:
    """Start the background poller for this process."""
    pipeline.scheduler.start()
    return _processor_state(pipeline)


@router.post("/processor/stop", response_model=ProcessorState)
async def stop_processor(
    _: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> ProcessorState:
    """Stop the background poller; jobs already running finish normally."""
    pipeline.scheduler.stop()
    return _processor_state(pipeline)


@router.post("/media", response_model=MediaRegistered, status_code=status.HTTP_201_CREATED)
async def register_media(
    body: MediaRegister,
    user_id: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> MediaRegistered:
    """Register an image or video; chunks follow unless sent inline."""
    try:
        record = await pipeline.media_store.register(
            owner_id=user_id,
            mime_type=body.mime_type,
            filename=body.filename,
            rank=body.rank,
            chunks_count=body.chunks_count,
            inline_data=body.data,
        )
    except PayloadValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    return MediaRegistered(
        id=record.id,
        kind=record.kind,
        mime_type=record.mime_type,
        chunks_count=record.chunks_count,
    )


@router.put("/media/{media_id}/chunks/{chunk_index}", response_model=ChunkStored)
async def upload_chunk(
    media_id: str,
    chunk_index: int,
    body: ChunkUpload,
    user_id: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> ChunkStored:
    """Store one base64 chunk of a registered media blob."""
    record = await pipeline.media_store.get(media_id)
    if record is None or record.owner_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")
    try:
        await pipeline.media_store.add_chunk(media_id, chunk_index, body.data)
    except PayloadValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    return ChunkStored(media_id=media_id, chunk_index=chunk_index)
