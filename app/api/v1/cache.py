"""Tiered cache introspection endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from app.api.deps import get_current_user, get_pipeline
from app.services.pipeline import UploadPipeline

router = APIRouter()


class CacheStatusResponse(BaseModel):
    """Cache entry status."""

    key: str
    exists: bool
    tier: Optional[str] = None
    size: int = 0
    count: int = 0
    age: float = 0.0


class CacheClearResponse(BaseModel):
    """Cache clear result."""

    removed: int


@router.get("/{key}/status", response_model=CacheStatusResponse)
async def get_cache_status(
    key: str,
    _: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> CacheStatusResponse:
    """Describe one cache entry without touching it."""
    entry = pipeline.cache.status(key)
    return CacheStatusResponse(
        key=key,
        exists=entry.exists,
        tier=entry.tier,
        size=entry.size,
        count=entry.count,
        age=entry.age,
    )


@router.delete("", response_model=CacheClearResponse)
async def clear_cache(
    _: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> CacheClearResponse:
    """Remove every entry under the cache prefix."""
    return CacheClearResponse(removed=pipeline.cache.clear())


@router.delete("/{key}", response_model=CacheClearResponse)
async def clear_cache_key(
    key: str,
    _: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> CacheClearResponse:
    """Remove one entry from both tiers."""
    return CacheClearResponse(removed=pipeline.cache.clear(key))
