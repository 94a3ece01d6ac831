"""
API layer - FastAPI application

Hack Timeline: tagged DeFi exploit / large-transfer timelines scraped from Telegram channels
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from hack_timeline.api.skeleton import router as skeleton_router
from hack_timeline.config.settings import settings
from hack_timeline.models.errors import TimelineError
from hack_timeline.observability import metrics as obs
from hack_timeline.services.scheduler import ScrapeScheduler
from hack_timeline.services.scrape_service import ScrapeOrchestrator, build_orchestrators
from hack_timeline.services.tag_cache import TagCache
from hack_timeline.services.timeline_store import TimelineRepository

logger = logging.getLogger(__name__)

# Global singletons
repository = TimelineRepository()
tag_cache = TagCache(repository)
orchestrators = build_orchestrators(repository, tag_cache)
scrape_scheduler = ScrapeScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Hack Timeline starting up")
    await repository.init_db()
    await tag_cache.startup()
    await scrape_scheduler.start(orchestrators, tag_cache)
    obs.set_app_info(settings.app_name, app.version, settings.env)
    yield
    logger.info("Hack Timeline shutting down")
    await scrape_scheduler.stop()
    for orchestrator in orchestrators.values():
        await orchestrator.close()
    await tag_cache.shutdown()
    await repository.close()


app = FastAPI(
    title="Hack Timeline API",
    description="DeFi exploit and large-transfer timelines with tag filtering",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["*"],
)

app.include_router(skeleton_router)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    route = request.scope.get("route")
    path = getattr(route, "path", request.url.path)
    method = request.method
    status_code = 500
    start = time.perf_counter()
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        if path != "/metrics":
            obs.observe_http_request(method, path, status_code, time.perf_counter() - start)


# ===================================================================
# Response Models
# ===================================================================

class TagOut(BaseModel):
    id: int
    name: str


class ScrapeResponse(BaseModel):
    message: str
    processed_count: int = 0
    error_count: int = 0


class RetryEntryOut(BaseModel):
    message_id: int
    attempts: int = 0
    last_error: str = ""


class ChannelRetryState(BaseModel):
    queued: List[RetryEntryOut] = Field(default_factory=list)
    dead_letters: List[RetryEntryOut] = Field(default_factory=list)


# ===================================================================
# Dependencies & parameter parsing
# ===================================================================

def get_repository() -> TimelineRepository:
    return repository


def get_tag_cache() -> TagCache:
    return tag_cache


def get_scheduler() -> ScrapeScheduler:
    return scrape_scheduler


def get_orchestrators() -> Dict[str, ScrapeOrchestrator]:
    return orchestrators


def get_orchestrator(
    kind: str,
    all_orchestrators: Dict[str, ScrapeOrchestrator] = Depends(get_orchestrators),
) -> ScrapeOrchestrator:
    orchestrator = all_orchestrators.get(kind.lower())
    if orchestrator is None:
        raise HTTPException(status_code=404, detail=f"Unknown record kind: {kind}")
    return orchestrator


def parse_tags(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(",") if t.strip()]


def parse_int(raw: Optional[str], name: str, *, positive: bool = False) -> int:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"Invalid {name} format") from None
    if positive and value <= 0:
        raise HTTPException(status_code=400, detail=f"Invalid {name} format")
    return value


def _internal_error(what: str, err: Exception) -> HTTPException:
    logger.error("Failed to %s: %s", what, err, exc_info=True)
    return HTTPException(status_code=500, detail="Internal Server Error")


# ===================================================================
# Timeline Endpoints
# ===================================================================

@app.get("/api/v1/{kind}/infos")
async def latest_timeline(
    tags: Optional[str] = None,
    info_number: Optional[str] = Query(None, alias="infoNumber"),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    limit = parse_int(info_number, "infoNumber", positive=True)
    try:
        return await orchestrator.latest(parse_tags(tags), limit)
    except TimelineError as e:
        raise _internal_error(f"get latest {orchestrator.kind} timeline", e)


@app.get("/api/v1/{kind}/infos/prev")
async def prev_timeline(
    tags: Optional[str] = None,
    prev_info_id: Optional[str] = Query(None, alias="prevInfoID"),
    info_number: Optional[str] = Query(None, alias="infoNumber"),
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    cursor_id = parse_int(prev_info_id, "prevInfoID")
    limit = parse_int(info_number, "infoNumber", positive=True)
    try:
        return await orchestrator.before(parse_tags(tags), cursor_id, limit)
    except TimelineError as e:
        raise _internal_error(f"get previous {orchestrator.kind} timeline", e)


@app.get("/api/v1/{kind}/tags", response_model=List[TagOut])
async def all_tags(orchestrator: ScrapeOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.all_tags()
    except TimelineError as e:
        raise _internal_error("get tags", e)


@app.post("/api/v1/{kind}/scrape-new-infos", response_model=ScrapeResponse)
async def scrape_new_infos(
    limit: Optional[str] = None,
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
    scheduler: ScrapeScheduler = Depends(get_scheduler),
):
    fetch_limit = parse_int(limit, "limit", positive=True)
    try:
        result = await scheduler.run_adhoc(orchestrator.kind, fetch_limit)
    except TimelineError as e:
        raise _internal_error(f"run {orchestrator.kind} scrape", e)

    for err in result.errors:
        logger.warning("Scraping error: %s", err)

    if result.errors:
        # Some progress is still a success for the caller
        status_code = 200 if result.processed_count > 0 else 500
        body = ScrapeResponse(
            message=f"Scraping completed with {result.error_count} errors.",
            processed_count=result.processed_count,
            error_count=result.error_count,
        )
        return JSONResponse(status_code=status_code, content=body.model_dump())
    if result.processed_count == 0:
        message = "No new messages to process."
    else:
        message = f"Successfully processed {result.processed_count} new infos."
    return ScrapeResponse(message=message, processed_count=result.processed_count)


# ===================================================================
# Retry Queue Endpoints
# ===================================================================

@app.get("/api/v1/{kind}/retry-queue", response_model=Dict[str, ChannelRetryState])
async def list_retry_queue(orchestrator: ScrapeOrchestrator = Depends(get_orchestrator)):
    def _entries(entries):
        return [
            {
                "message_id": e.post.message_id,
                "attempts": e.attempts,
                "last_error": e.last_error,
            }
            for e in entries
        ]

    return {
        channel: {
            "queued": _entries(orchestrator.retry_queue(channel)),
            "dead_letters": _entries(orchestrator.dead_letters(channel)),
        }
        for channel in orchestrator.channels
    }


@app.delete("/api/v1/{kind}/retry-queue/{channel}/{message_id}")
async def discard_retry(
    channel: str,
    message_id: int,
    orchestrator: ScrapeOrchestrator = Depends(get_orchestrator),
):
    if not orchestrator.discard_retry(channel, message_id):
        raise HTTPException(status_code=404, detail="Post not in retry queue")
    return {"message": f"Discarded message {message_id} from {channel}"}


# ===================================================================
# Dashboard & System Endpoints
# ===================================================================

@app.get("/api/v1/stats")
async def dashboard_stats(store: TimelineRepository = Depends(get_repository)):
    try:
        return await store.get_stats()
    except Exception as e:
        raise _internal_error("get stats", e)


@app.get("/api/v1/health")
async def health_check(
    scheduler: ScrapeScheduler = Depends(get_scheduler),
    cache: TagCache = Depends(get_tag_cache),
):
    return {
        "status": "healthy",
        "app": settings.app_name,
        "env": settings.env,
        "scheduler": scheduler.state,
        "jobs": scheduler.list_jobs(),
        "tag_cache": cache.backend,
    }


@app.get("/metrics")
async def prometheus_metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
