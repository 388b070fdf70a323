"""API v1 router aggregator."""

from fastapi import APIRouter

from app.api.v1 import cache, cron, etsy, health, queue

api_router = APIRouter()

# Health check
api_router.include_router(health.router, prefix="/health", tags=["health"])

# Upload queue
api_router.include_router(queue.router, prefix="/queue", tags=["queue"])

# External scheduler trigger
api_router.include_router(cron.router, prefix="/cron", tags=["cron"])

# Etsy connection and rate limits
api_router.include_router(etsy.router, prefix="/etsy", tags=["etsy"])

# Tiered cache
api_router.include_router(cache.router, prefix="/cache", tags=["cache"])
