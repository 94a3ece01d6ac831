"""API skeleton endpoints for quick bootstrap and capability introspection."""

from typing import Any, Dict

from fastapi import APIRouter

from hack_timeline.config.settings import settings
from hack_timeline.models.record_kind import RECORD_KINDS

router = APIRouter(prefix="/api/v1", tags=["system"])


@router.get("", summary="API index")
async def api_index() -> Dict[str, Any]:
    return {
        "name": "Hack Timeline API",
        "app": settings.app_name,
        "env": settings.env,
        "docs": "/docs",
        "health": "/api/v1/health",
        "metrics": "/metrics",
        "kinds": sorted(RECORD_KINDS),
    }


@router.get("/capabilities", summary="Runtime capability matrix")
async def capabilities() -> Dict[str, Any]:
    return {
        "channels": {
            "hacking": settings.telegram.hacking_channels,
            "transfer": settings.telegram.transfer_channels,
            "max_pages_per_fetch": settings.telegram.max_pages_per_fetch,
        },
        "llm": {
            "primary_backend": settings.llm.primary_backend,
            "fallback_enabled": settings.llm.fallback_enabled,
            "fallback_backend": settings.llm.fallback_backend,
        },
        "scrape": {
            "post_concurrency": settings.scrape.post_concurrency,
            "retry_max_attempts": settings.scrape.retry_max_attempts,
        },
        "scheduler": {
            "enabled": settings.scheduler.enabled,
            "interval_seconds": settings.scheduler.interval_seconds,
            "initial_fetch_limit": settings.scheduler.initial_fetch_limit,
            "periodic_fetch_limit": settings.scheduler.periodic_fetch_limit,
            "cycle_timeout_seconds": settings.scheduler.cycle_timeout_seconds,
        },
        "cache": {
            "backend": settings.cache.backend,
            "tag_ttl_seconds": settings.cache.tag_ttl_seconds,
        },
    }
