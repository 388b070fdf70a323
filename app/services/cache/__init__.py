"""Size-tiered response cache.

This package provides:
- TieredCache routing payloads between a small and a large tier by size
- In-process and file-backed tier implementations
"""

from app.services.cache.tiered import (
    CacheStatus,
    CacheTier,
    FileTier,
    MemoryTier,
    TieredCache,
    TierUnavailableError,
)

__all__ = [
    "CacheStatus",
    "CacheTier",
    "FileTier",
    "MemoryTier",
    "TieredCache",
    "TierUnavailableError",
]
