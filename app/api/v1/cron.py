"""Endpoints invoked by an external scheduler."""

import logging

from fastapi import APIRouter, Depends

from app.api.deps import get_pipeline, verify_cron_key
from app.schemas.queue import WorkerRunResult
from app.services.pipeline import UploadPipeline

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/process-upload-queue",
    response_model=WorkerRunResult,
    dependencies=[Depends(verify_cron_key)],
)
async def process_upload_queue(
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> WorkerRunResult:
    """Process one batch of durably pending upload jobs."""
    logger.info("Cron upload worker triggered")
    summary = await pipeline.worker.run_once()
    return WorkerRunResult(**summary.to_dict())
