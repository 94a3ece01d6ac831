"""
Scrape scheduler - APScheduler driven priming + periodic cycles

States:
  idle     -> not started, or started with the timer disabled
  priming  -> load watermarks, one eager cycle, persist, refresh tag cache
  steady   -> interval job runs one cycle per kind, persist, refresh tag cache
  stopped  -> timer shut down
"""

import asyncio
import contextlib
import logging
from typing import Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from hack_timeline.config.settings import settings
from hack_timeline.models.message import CycleResult
from hack_timeline.services.scrape_service import ScrapeOrchestrator
from hack_timeline.services.tag_cache import TagCache

logger = logging.getLogger(__name__)

IDLE = "idle"
PRIMING = "priming"
STEADY = "steady"
STOPPED = "stopped"

_JOB_ID = "scrape_cycle"


class ScrapeScheduler:

    def __init__(self):
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._orchestrators: Dict[str, ScrapeOrchestrator] = {}
        self._tag_cache: Optional[TagCache] = None
        self._priming_task: Optional[asyncio.Task] = None
        self._primed: Set[str] = set()
        self._prime_locks: Dict[str, asyncio.Lock] = {}
        self.state = IDLE

    @property
    def orchestrators(self) -> Dict[str, ScrapeOrchestrator]:
        return self._orchestrators

    async def start(self, orchestrators: Dict[str, ScrapeOrchestrator], tag_cache: Optional[TagCache] = None):
        """Kick off priming in the background; the interval job is added once it completes."""
        self._orchestrators = dict(orchestrators)
        self._tag_cache = tag_cache
        self.state = PRIMING
        self._priming_task = asyncio.create_task(self._prime_and_start())

    async def wait_primed(self):
        if self._priming_task is not None:
            await self._priming_task

    async def _prime_and_start(self):
        for kind in self._orchestrators:
            await self._prime(kind)

        if not settings.scheduler.enabled:
            logger.info("Scheduler disabled, cycles run on demand only")
            self.state = IDLE
            return

        await self._run_all(settings.scheduler.initial_fetch_limit)

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=settings.scheduler.interval_seconds),
            id=_JOB_ID,
            name="periodic scrape cycle",
            misfire_grace_time=settings.scheduler.misfire_grace_time,
            coalesce=True,
            max_instances=1,
            replace_existing=True,
        )
        self._scheduler.start()
        self.state = STEADY
        logger.info(
            "Scrape scheduler steady: every %ds, fetch limit %d",
            settings.scheduler.interval_seconds, settings.scheduler.periodic_fetch_limit,
        )

    async def _ensure_primed(self, kind: str):
        """Load watermarks for one kind once; concurrent callers wait on the same lock."""
        async with self._prime_locks.setdefault(kind, asyncio.Lock()):
            if kind in self._primed:
                return
            await self._orchestrators[kind].prime_watermarks()
            self._primed.add(kind)

    async def _prime(self, kind: str) -> bool:
        try:
            await self._ensure_primed(kind)
        except Exception as e:
            # Unprimed kinds skip cycles so they never scrape from watermark 0
            logger.error("Watermark priming failed for %s: %s", kind, e, exc_info=True)
            return False
        return True

    async def _tick(self):
        await self._run_all(settings.scheduler.periodic_fetch_limit)

    async def _run_all(self, fetch_limit: int):
        kinds = []
        for kind in self._orchestrators:
            if kind in self._primed or await self._prime(kind):
                kinds.append(kind)
        await asyncio.gather(*(self._run_scheduled(kind, fetch_limit) for kind in kinds))

    async def _run_scheduled(self, kind: str, fetch_limit: int):
        try:
            await self._run_cycle(kind, fetch_limit, settings.scheduler.cycle_timeout_seconds)
        except Exception as e:
            logger.error("Scheduled %s cycle failed: %s", kind, e, exc_info=True)

    async def _run_cycle(self, kind: str, fetch_limit: int, timeout: Optional[float]) -> CycleResult:
        orchestrator = self._orchestrators[kind]
        try:
            result = await orchestrator.run_cycle(fetch_limit, timeout=timeout)
        finally:
            await self._after_cycle(kind, orchestrator)
        for err in result.errors:
            logger.warning("[%s] cycle error: %s", kind, err)
        return result

    async def _after_cycle(self, kind: str, orchestrator: ScrapeOrchestrator):
        try:
            await orchestrator.persist_watermarks()
        except Exception as e:
            logger.error("Persisting %s watermarks failed: %s", kind, e, exc_info=True)
        if self._tag_cache is not None:
            try:
                await self._tag_cache.refresh()
            except Exception as e:
                logger.error("Tag cache refresh failed: %s", e, exc_info=True)

    async def run_adhoc(self, kind: str, fetch_limit: int) -> CycleResult:
        """Run one cycle outside the timer, then persist watermarks and refresh the cache."""
        if kind not in self._orchestrators:
            raise ValueError(f"unknown record kind: {kind}")
        await self._ensure_primed(kind)
        return await self._run_cycle(kind, fetch_limit, None)

    def list_jobs(self) -> list:
        if not self._scheduler:
            return []
        return [
            {"id": job.id, "name": job.name, "next_run": str(job.next_run_time)}
            for job in self._scheduler.get_jobs()
        ]

    async def stop(self):
        if self._priming_task is not None and not self._priming_task.done():
            self._priming_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._priming_task
        self._priming_task = None
        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self.state = STOPPED
