"""
Tag cache - read-through TTL cache for the "all tags" listing.

Backends:
- memory: process-local dict with monotonic expiry
- redis: SETEX'd JSON, shared between API replicas

The scheduler refreshes the cache after every cycle so new tags show up
without waiting for the TTL to lapse.
"""

import contextlib
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from redis import asyncio as redis_asyncio

from hack_timeline.config.settings import settings
from hack_timeline.models.errors import CacheCorruptionError
from hack_timeline.observability import metrics as obs

logger = logging.getLogger(__name__)

ALL_TAGS_KEY = "all_tags"


class TagCache:
    """Read-through cache in front of TimelineRepository.list_all_tags"""

    def __init__(self, repository, ttl_seconds: Optional[float] = None, backend: Optional[str] = None):
        self._repo = repository
        self._ttl = float(settings.cache.tag_ttl_seconds if ttl_seconds is None else ttl_seconds)
        self._desired_backend = (backend or settings.cache.backend or "memory").strip().lower()
        self._backend = "memory"
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._redis = None

    @property
    def backend(self) -> str:
        return self._backend

    async def startup(self) -> None:
        if self._desired_backend != "redis":
            self._backend = "memory"
            return
        try:
            self._redis = redis_asyncio.from_url(
                settings.cache.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await self._redis.ping()
            self._backend = "redis"
            logger.info("Tag cache backend: redis")
        except Exception as e:
            logger.warning("redis unreachable, fallback to memory tag cache: %s", e)
            self._backend = "memory"
            if self._redis is not None:
                with contextlib.suppress(Exception):
                    await self._redis.aclose()
            self._redis = None

    async def shutdown(self) -> None:
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.aclose()
            self._redis = None
        self._backend = "memory"
        self._entries.clear()

    def _redis_key(self, key: str) -> str:
        prefix = str(settings.cache.redis_key_prefix or "hack_timeline:cache").strip(":")
        return f"{prefix}:{key}"

    # --- Public API ---

    async def get_all_tags(self) -> List[Dict[str, Any]]:
        """Cached tags, loading from the store on a miss."""
        cached = await self.get(ALL_TAGS_KEY)
        if cached is not None:
            obs.record_cache_lookup("hit")
            return cached
        obs.record_cache_lookup("miss")
        tags = await self._repo.list_all_tags()
        await self.set(tags)
        return tags

    async def refresh(self) -> List[Dict[str, Any]]:
        """Reload from the store unconditionally."""
        tags = await self._repo.list_all_tags()
        await self.set(tags)
        logger.debug("Tag cache refreshed with %d tags", len(tags))
        return tags

    async def get(self, key: str) -> Optional[List[Dict[str, Any]]]:
        raw = await self._read(key)
        if raw is None:
            return None
        try:
            return self._validate(raw)
        except CacheCorruptionError as e:
            logger.warning("Discarding corrupted cache entry %s: %s", key, e)
            await self.invalidate(key)
            return None

    async def set(self, tags: List[Dict[str, Any]], key: str = ALL_TAGS_KEY) -> None:
        value = [{"id": t["id"], "name": t["name"]} for t in tags]
        if self._backend == "redis" and self._redis is not None:
            await self._redis.set(self._redis_key(key), json.dumps(value), ex=max(1, int(self._ttl)))
            return
        self._entries[key] = (time.monotonic() + self._ttl, value)

    async def invalidate(self, key: str = ALL_TAGS_KEY) -> None:
        if self._backend == "redis" and self._redis is not None:
            await self._redis.delete(self._redis_key(key))
            return
        self._entries.pop(key, None)

    # --- Internals ---

    async def _read(self, key: str) -> Any:
        if self._backend == "redis" and self._redis is not None:
            raw = await self._redis.get(self._redis_key(key))
            if raw is None:
                return None
            try:
                return json.loads(raw)
            except (TypeError, json.JSONDecodeError):
                return raw
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    @staticmethod
    def _validate(value: Any) -> List[Dict[str, Any]]:
        if not isinstance(value, list):
            raise CacheCorruptionError(f"expected list, got {type(value).__name__}")
        tags: List[Dict[str, Any]] = []
        for item in value:
            if not isinstance(item, dict) or "id" not in item or not isinstance(item.get("name"), str):
                raise CacheCorruptionError(f"unexpected tag entry: {item!r}")
            tags.append({"id": item["id"], "name": item["name"]})
        return tags
