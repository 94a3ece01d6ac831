"""
Tests for the tag cache.
"""

import time
from unittest.mock import AsyncMock

import pytest

from hack_timeline.config.settings import settings
from hack_timeline.services.tag_cache import ALL_TAGS_KEY, TagCache


class _CountingRepo:
    def __init__(self, tags):
        self.tags = tags
        self.calls = 0

    async def list_all_tags(self):
        self.calls += 1
        return list(self.tags)


@pytest.mark.asyncio
async def test_read_through_populates_then_hits():
    repo = _CountingRepo([{"id": 1, "name": "eth"}])
    cache = TagCache(repo, ttl_seconds=60)

    assert await cache.get_all_tags() == [{"id": 1, "name": "eth"}]
    repo.tags.append({"id": 2, "name": "usdc"})
    assert await cache.get_all_tags() == [{"id": 1, "name": "eth"}]
    assert repo.calls == 1


@pytest.mark.asyncio
async def test_refresh_reloads_unconditionally():
    repo = _CountingRepo([{"id": 1, "name": "eth"}])
    cache = TagCache(repo, ttl_seconds=60)
    await cache.get_all_tags()

    repo.tags.append({"id": 2, "name": "usdc"})
    await cache.refresh()

    assert [t["name"] for t in await cache.get_all_tags()] == ["eth", "usdc"]
    assert repo.calls == 2


@pytest.mark.asyncio
async def test_expired_entry_is_a_miss():
    repo = _CountingRepo([{"id": 1, "name": "eth"}])
    cache = TagCache(repo, ttl_seconds=10)

    await cache.get_all_tags()
    _, value = cache._entries[ALL_TAGS_KEY]
    cache._entries[ALL_TAGS_KEY] = (time.monotonic() - 1, value)
    await cache.get_all_tags()

    assert repo.calls == 2


@pytest.mark.asyncio
async def test_corrupted_entry_is_treated_as_miss():
    repo = _CountingRepo([{"id": 1, "name": "eth"}])
    cache = TagCache(repo, ttl_seconds=60)
    cache._entries[ALL_TAGS_KEY] = (float("inf"), {"unexpected": "shape"})

    assert await cache.get(ALL_TAGS_KEY) is None
    assert ALL_TAGS_KEY not in cache._entries
    assert await cache.get_all_tags() == [{"id": 1, "name": "eth"}]
    assert repo.calls == 1


@pytest.mark.asyncio
async def test_invalidate_forces_reload():
    repo = _CountingRepo([{"id": 1, "name": "eth"}])
    cache = TagCache(repo, ttl_seconds=60)
    await cache.get_all_tags()
    await cache.invalidate()
    await cache.get_all_tags()
    assert repo.calls == 2


@pytest.mark.asyncio
async def test_redis_unreachable_falls_back_to_memory(monkeypatch):
    monkeypatch.setattr(settings.cache, "redis_url", "redis://127.0.0.1:1/0")
    client = AsyncMock()
    client.ping.side_effect = ConnectionError("refused")
    monkeypatch.setattr(
        "hack_timeline.services.tag_cache.redis_asyncio.from_url",
        lambda *args, **kwargs: client,
    )
    cache = TagCache(_CountingRepo([]), backend="redis")

    await cache.startup()

    assert cache.backend == "memory"
    client.aclose.assert_awaited()


@pytest.mark.asyncio
async def test_redis_backend_round_trips_json(monkeypatch):
    store = {}

    class _FakeRedis:
        async def ping(self):
            return True

        async def set(self, key, value, ex=None):
            store[key] = (value, ex)

        async def get(self, key):
            entry = store.get(key)
            return entry[0] if entry else None

        async def delete(self, key):
            store.pop(key, None)

        async def aclose(self):
            pass

    monkeypatch.setattr(
        "hack_timeline.services.tag_cache.redis_asyncio.from_url",
        lambda *args, **kwargs: _FakeRedis(),
    )
    repo = _CountingRepo([{"id": 3, "name": "bridge"}])
    cache = TagCache(repo, ttl_seconds=900, backend="redis")
    await cache.startup()

    assert cache.backend == "redis"
    assert await cache.get_all_tags() == [{"id": 3, "name": "bridge"}]
    assert await cache.get_all_tags() == [{"id": 3, "name": "bridge"}]
    assert repo.calls == 1
    key = f"{settings.cache.redis_key_prefix}:{ALL_TAGS_KEY}"
    assert store[key][1] == 900

    store[key] = ("not json", 900)
    assert await cache.get(ALL_TAGS_KEY) is None
    assert key not in store
    await cache.shutdown()
