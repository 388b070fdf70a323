"""Etsy connection and rate limit endpoints."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.api.deps import get_current_owner, get_current_user, get_pipeline
from app.services.etsy import AuthExpiredError, EtsyAPIError, Owner
from app.services.pipeline import UploadPipeline

router = APIRouter()


# Response schemas


class EndpointBudget(BaseModel):
    """Budget for one endpoint."""

    remaining: int
    resets_in_seconds: float
    blocked: bool


class RateLimitStatusResponse(BaseModel):
    """Rate limit status response."""

    daily_remaining: int
    max_per_day: int
    max_per_second: int
    endpoints: dict[str, EndpointBudget]


class TokenStatusResponse(BaseModel):
    """Token/connection status response."""

    connected: bool
    is_valid: bool = False
    shop_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    is_expired: bool = False
    refreshing: bool = False


class MessageResponse(BaseModel):
    """Simple message response."""

    message: str


# Endpoints


@router.get("/rate-limit", response_model=RateLimitStatusResponse)
async def get_rate_limit_status(
    _: str = Depends(get_current_user),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> RateLimitStatusResponse:
    """Get current API rate limit status."""
    return RateLimitStatusResponse(**pipeline.rate_limiter.snapshot())


@router.get("/token/status", response_model=TokenStatusResponse)
async def get_token_status(
    owner: Owner = Depends(get_current_owner),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> TokenStatusResponse:
    """Check the shop connection without refreshing it."""
    broker = pipeline.token_broker
    token = await broker.stored_token(owner)
    if token is None:
        return TokenStatusResponse(connected=False, shop_id=owner.shop_id)

    return TokenStatusResponse(
        connected=True,
        is_valid=token.is_valid,
        shop_id=owner.shop_id,
        expires_at=token.expires_at,
        is_expired=token.expires_at <= datetime.now(timezone.utc),
        refreshing=broker.is_refreshing(owner),
    )


@router.post("/token/refresh", response_model=MessageResponse)
async def refresh_token(
    owner: Owner = Depends(get_current_owner),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> MessageResponse:
    """Force a token refresh for the caller's shop."""
    try:
        await pipeline.token_broker.refresh(owner)
    except AuthExpiredError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)
    except EtsyAPIError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return MessageResponse(message="Token refreshed")


@router.post("/token/invalidate", response_model=MessageResponse)
async def invalidate_token(
    owner: Owner = Depends(get_current_owner),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> MessageResponse:
    """Disconnect the caller's shop; uploads fail until it is reconnected."""
    await pipeline.token_broker.invalidate(owner)
    return MessageResponse(message="Etsy connection invalidated")
