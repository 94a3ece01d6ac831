"""
Scrape orchestrator - one fetch -> extract -> store -> watermark cycle per record kind

Cycle flow:
1. fetch every channel concurrently starting at its in-memory watermark
2. any fetch failure aborts the cycle before extraction (fetch gate)
3. per channel: retry-queue entries + fresh posts are extracted and stored
   concurrently, bounded by `post_concurrency`
4. once all of a channel's posts resolved, its watermark advances past the
   successfully stored posts; failures stay queued for the next cycle
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional, Set, Tuple

from hack_timeline.config.settings import settings
from hack_timeline.extractors.base import Extractor
from hack_timeline.extractors.hacking_extractor import HackingExtractor
from hack_timeline.extractors.transfer_extractor import TransferExtractor
from hack_timeline.gateways.base import SourceGateway
from hack_timeline.gateways.telegram_gateway import build_gateways
from hack_timeline.models.errors import CycleTimeoutError, FetchError
from hack_timeline.models.message import CycleResult, RetryEntry, SourcePost
from hack_timeline.models.record_kind import HACKING, TRANSFER
from hack_timeline.observability import metrics as obs
from hack_timeline.services.tag_cache import TagCache
from hack_timeline.services.timeline_store import TimelineRepository

logger = logging.getLogger(__name__)


class ScrapeOrchestrator:
    """Drives scrape cycles across all configured channels of one record kind"""

    def __init__(
        self,
        kind: str,
        repository: TimelineRepository,
        gateways: Iterable[SourceGateway],
        extractor: Extractor,
        tag_cache: Optional[TagCache] = None,
        post_concurrency: Optional[int] = None,
        retry_max_attempts: Optional[int] = None,
    ):
        self.kind = kind
        self.repository = repository
        self.gateways: List[SourceGateway] = list(gateways)
        self.extractor = extractor
        self.tag_cache = tag_cache
        self._post_concurrency = max(1, int(
            settings.scrape.post_concurrency if post_concurrency is None else post_concurrency
        ))
        self._retry_max = max(0, int(
            settings.scrape.retry_max_attempts if retry_max_attempts is None else retry_max_attempts
        ))
        self._retry_queues: Dict[str, List[RetryEntry]] = {
            gw.channel_username: [] for gw in self.gateways
        }
        self._dead_letters: Dict[str, List[RetryEntry]] = {
            gw.channel_username: [] for gw in self.gateways
        }
        # Dead-lettered or discarded ids not yet behind the watermark
        self._dropped_ids: Dict[str, Set[int]] = {
            gw.channel_username: set() for gw in self.gateways
        }
        self._cycle_lock = asyncio.Lock()

    @property
    def channels(self) -> List[str]:
        return [gw.channel_username for gw in self.gateways]

    def watermarks(self) -> Dict[str, int]:
        return {gw.channel_username: gw.last_message_id for gw in self.gateways}

    # --- Watermark priming / persistence ---

    async def prime_watermarks(self):
        """Load persisted watermarks into the gateways, creating zero rows for new channels."""
        for gw in self.gateways:
            row = await self.repository.get_watermark(self.kind, gw.channel_username)
            if row is None:
                await self.repository.insert_watermark(self.kind, gw.channel_username, 0)
                gw.last_message_id = 0
                logger.info("[%s] New channel %s, watermark starts at 0", self.kind, gw.channel_username)
            else:
                gw.last_message_id = row["last_message_id"]
                logger.info(
                    "[%s] Channel %s primed at watermark %d",
                    self.kind, gw.channel_username, gw.last_message_id,
                )

    async def persist_watermarks(self):
        """Write in-memory watermarks back to the store; persisted values never decrease."""
        for gw in self.gateways:
            current = gw.last_message_id
            row = await self.repository.get_watermark(self.kind, gw.channel_username)
            if row is None:
                await self.repository.insert_watermark(self.kind, gw.channel_username, current)
                continue
            persisted = row["last_message_id"]
            if current > persisted:
                await self.repository.update_watermark(self.kind, gw.channel_username, current)
            elif current < persisted:
                logger.warning(
                    "[%s] Channel %s in-memory watermark %d is behind persisted %d, keeping persisted",
                    self.kind, gw.channel_username, current, persisted,
                )

    # --- Cycle ---

    async def run_cycle(self, fetch_limit: int, timeout: Optional[float] = None) -> CycleResult:
        """
        Run one cycle over every channel. Cycles on one orchestrator never
        interleave. Errors are collected in the result, never raised.
        """
        async with self._cycle_lock:
            started = time.monotonic()
            result = await self._run_cycle_locked(int(fetch_limit), timeout)
            elapsed = time.monotonic() - started

            if result.ok:
                status = "ok"
            elif result.processed_count > 0:
                status = "partial"
            else:
                status = "failed"
            obs.record_cycle(self.kind, status, elapsed)
            log = logger.info if result.ok else logger.warning
            log(
                "[%s] Cycle %s: fetched=%d retried=%d stored=%d errors=%d in %.2fs",
                self.kind, status, result.fetched_count, result.retried_count,
                result.processed_count, result.error_count, elapsed,
            )
            return result

    async def _run_cycle_locked(self, fetch_limit: int, timeout: Optional[float]) -> CycleResult:
        result = CycleResult(kind=self.kind)
        if not self.gateways:
            return result

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None

        # 1. Fetch fan-out
        fetch_tasks = {
            gw.channel_username: asyncio.ensure_future(self._fetch(gw, fetch_limit))
            for gw in self.gateways
        }
        pending_channels = await self._wait_all(fetch_tasks, deadline)
        if pending_channels:
            for channel, task in fetch_tasks.items():
                if channel not in pending_channels and task.exception() is not None:
                    result.errors.append(task.exception())
            result.errors.append(CycleTimeoutError(self.kind, pending_channels))
            return result

        # 2. Fetch gate
        fetch_errors = [t.exception() for t in fetch_tasks.values() if t.exception() is not None]
        if fetch_errors:
            for err in fetch_errors:
                logger.error("[%s] %s", self.kind, err)
            result.errors.extend(fetch_errors)
            return result

        posts_by_channel = {ch: t.result() for ch, t in fetch_tasks.items()}
        result.fetched_count = sum(len(p) for p in posts_by_channel.values())

        # 3. Extract + store fan-out, one task per channel
        process_tasks = {
            gw.channel_username: asyncio.ensure_future(
                self._process_channel(gw, posts_by_channel[gw.channel_username])
            )
            for gw in self.gateways
        }
        pending_channels = await self._wait_all(process_tasks, deadline)

        for channel, task in process_tasks.items():
            if channel in pending_channels:
                continue
            stored, errors, retried = task.result()
            result.processed_count += stored
            result.errors.extend(errors)
            result.retried_count += retried

        if pending_channels:
            result.errors.append(CycleTimeoutError(self.kind, pending_channels))
        return result

    @staticmethod
    async def _wait_all(tasks: Dict[str, asyncio.Future], deadline: Optional[float]) -> List[str]:
        """Wait for every task; cancel the ones still running at the deadline and return their channels."""
        timeout = None
        if deadline is not None:
            timeout = max(0.0, deadline - asyncio.get_running_loop().time())
        _, pending = await asyncio.wait(list(tasks.values()), timeout=timeout)
        if not pending:
            return []
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return [ch for ch, task in tasks.items() if task in pending]

    async def _fetch(self, gw: SourceGateway, fetch_limit: int) -> List[SourcePost]:
        channel = gw.channel_username
        try:
            posts = await gw.fetch_new_posts(gw.last_message_id, fetch_limit)
        except FetchError:
            obs.record_fetch(self.kind, channel, "error")
            raise
        except Exception as e:
            obs.record_fetch(self.kind, channel, "error")
            raise FetchError(channel, str(e)) from e
        obs.record_fetch(self.kind, channel, "ok", len(posts))
        logger.debug("[%s] Channel %s: %d new posts", self.kind, channel, len(posts))
        return list(posts)

    async def _process_channel(
        self,
        gw: SourceGateway,
        fresh_posts: List[SourcePost],
    ) -> Tuple[int, List[Exception], int]:
        channel = gw.channel_username
        queued = list(self._retry_queues.get(channel, []))
        dropped = self._dropped_ids.setdefault(channel, set())
        skip_ids = {e.post.message_id for e in queued} | dropped
        entries = queued + [RetryEntry(post=p) for p in fresh_posts if p.message_id not in skip_ids]

        semaphore = asyncio.Semaphore(self._post_concurrency)
        outcomes = await asyncio.gather(
            *(self._process_post(entry.post, semaphore) for entry in entries)
        )

        stored = 0
        errors: List[Exception] = []
        advanceable: List[int] = []
        fresh_failed = False
        next_queue: List[RetryEntry] = []
        for entry, error in zip(entries, outcomes):
            if error is None:
                stored += 1
                advanceable.append(entry.post.message_id)
                continue
            errors.append(error)
            entry.attempts += 1
            entry.last_error = str(error)
            if self._retry_max and entry.attempts >= self._retry_max:
                self._dead_letters.setdefault(channel, []).append(entry)
                dropped.add(entry.post.message_id)
                advanceable.append(entry.post.message_id)
                obs.record_dead_letter(self.kind, channel)
                logger.error(
                    "[%s] Channel %s message %d dropped to dead letters after %d attempts: %s",
                    self.kind, channel, entry.post.message_id, entry.attempts, error,
                )
            else:
                next_queue.append(entry)
                if entry.post.message_id > gw.last_message_id:
                    fresh_failed = True

        # Scanned-but-unconverted messages count as resolved only when
        # nothing above the watermark failed
        candidates = [gw.last_message_id, *advanceable]
        if not fresh_failed:
            candidates.append(int(getattr(gw, "scanned_message_id", 0) or 0))
        new_watermark = max(candidates)
        if new_watermark != gw.last_message_id:
            logger.info(
                "[%s] Channel %s watermark %d -> %d",
                self.kind, channel, gw.last_message_id, new_watermark,
            )
        gw.last_message_id = new_watermark
        dropped.difference_update({i for i in dropped if i <= new_watermark})

        self._retry_queues[channel] = next_queue
        obs.set_retry_queue_size(self.kind, channel, len(next_queue))
        return stored, errors, len(queued)

    async def _process_post(self, post: SourcePost, semaphore: asyncio.Semaphore) -> Optional[Exception]:
        """Extract and store one post; returns the error instead of raising it."""
        async with semaphore:
            try:
                extracted = await self.extractor.extract(post)
                record = dict(extracted.fields)
                record["report_time"] = post.report_time
                record["message_id"] = post.message_id
                record["channel_username"] = post.channel_username
                await self.repository.insert_record(self.kind, record, extracted.tag_names)
            except Exception as e:
                obs.record_extract(self.kind, "failed")
                logger.warning(
                    "[%s] Channel %s message %d failed: %s",
                    self.kind, post.channel_username, post.message_id, e,
                )
                return e
        obs.record_extract(self.kind, "stored")
        return None

    # --- Retry queue inspection ---

    def retry_queue(self, channel_username: str) -> List[RetryEntry]:
        return list(self._retry_queues.get(channel_username, []))

    def dead_letters(self, channel_username: str) -> List[RetryEntry]:
        return list(self._dead_letters.get(channel_username, []))

    def discard_retry(self, channel_username: str, message_id: int) -> bool:
        """Drop one post from a channel's retry queue. Returns False when it was not queued."""
        queue = self._retry_queues.get(channel_username, [])
        kept = [e for e in queue if e.post.message_id != message_id]
        if len(kept) == len(queue):
            return False
        self._retry_queues[channel_username] = kept
        self._dropped_ids.setdefault(channel_username, set()).add(message_id)
        obs.set_retry_queue_size(self.kind, channel_username, len(kept))
        logger.info("[%s] Channel %s message %d discarded from retry queue", self.kind, channel_username, message_id)
        return True

    # --- Reads ---

    async def latest(self, tag_names: Optional[List[str]], limit: int) -> List[Dict]:
        return await self.repository.list_by_tags(self.kind, tag_names, limit)

    async def before(self, tag_names: Optional[List[str]], cursor_id: int, limit: int) -> List[Dict]:
        return await self.repository.list_by_tags_before(self.kind, tag_names, cursor_id, limit)

    async def all_tags(self) -> List[Dict]:
        if self.tag_cache is not None:
            return await self.tag_cache.get_all_tags()
        return await self.repository.list_all_tags()

    async def close(self):
        for gw in self.gateways:
            await gw.close()
        await self.extractor.close()


def build_orchestrators(
    repository: TimelineRepository,
    tag_cache: Optional[TagCache] = None,
) -> Dict[str, ScrapeOrchestrator]:
    """One orchestrator per record kind, wired to the configured channels."""
    return {
        HACKING: ScrapeOrchestrator(
            HACKING,
            repository,
            build_gateways(HACKING, settings.telegram.hacking_channels),
            HackingExtractor(),
            tag_cache=tag_cache,
        ),
        TRANSFER: ScrapeOrchestrator(
            TRANSFER,
            repository,
            build_gateways(TRANSFER, settings.telegram.transfer_channels),
            TransferExtractor(),
            tag_cache=tag_cache,
        ),
    }
