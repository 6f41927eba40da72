"""API routes for cache statistics and health."""

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from readthrough.cache.manager import get_cache_manager
from readthrough.config.settings import settings

router = APIRouter(prefix="/api/cache", tags=["cache"])


class CacheStatsResponse(BaseModel):
    """Cache counters plus the configured TTL policy."""
    hits: int
    misses: int
    hit_rate: float
    sets: int
    deletes: int
    errors: int
    ownership_rejections: int
    items: int
    list_ttl_ms: int
    detail_ttl_ms: int
    list_staleness_bound_ms: Optional[int]


class CacheHealthResponse(BaseModel):
    connected: bool
    backend: Optional[str] = None
    error: Optional[str] = None


@router.get("/stats")
async def cache_stats() -> CacheStatsResponse:
    """Return hit/miss counters and the list staleness bound."""
    stats = await get_cache_manager().get_stats_with_items()
    return CacheStatsResponse(
        **stats.model_dump(),
        hit_rate=round(stats.hit_rate, 2),
        list_ttl_ms=settings.cache_ttl_list_ms,
        detail_ttl_ms=settings.cache_ttl_detail_ms,
        list_staleness_bound_ms=(
            None if settings.cache_track_owner_keys else settings.cache_ttl_list_ms
        ),
    )


@router.get("/health")
async def cache_health() -> CacheHealthResponse:
    """Probe the store with a set/get/delete round trip."""
    return CacheHealthResponse(**await get_cache_manager().health_check())
