"""
Tests for API endpoints.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import FakeExtractor, FakeGateway, FakeStore, make_post
from hack_timeline.api.app import (
    app, get_orchestrators, get_repository, get_scheduler, get_tag_cache,
)
from hack_timeline.models.errors import StoreError
from hack_timeline.models.message import CycleResult
from hack_timeline.services.scheduler import ScrapeScheduler
from hack_timeline.services.scrape_service import ScrapeOrchestrator
from hack_timeline.services.tag_cache import TagCache


class _Wiring:
    def __init__(self):
        self.store = FakeStore()
        self.gateway = FakeGateway("defimon", [make_post(i, channel="defimon") for i in (1, 2, 3)])
        self.extractor = FakeExtractor()
        self.tag_cache = TagCache(self.store, ttl_seconds=60)
        self.orchestrator = ScrapeOrchestrator(
            "hacking", self.store, [self.gateway], self.extractor,
            tag_cache=self.tag_cache, post_concurrency=2, retry_max_attempts=0,
        )
        self.scheduler = ScrapeScheduler()
        self.scheduler._orchestrators = {"hacking": self.orchestrator}


@pytest.fixture
def wiring():
    w = _Wiring()
    app.dependency_overrides[get_orchestrators] = lambda: {"hacking": w.orchestrator}
    app.dependency_overrides[get_scheduler] = lambda: w.scheduler
    app.dependency_overrides[get_tag_cache] = lambda: w.tag_cache
    app.dependency_overrides[get_repository] = lambda: w.store
    yield w
    app.dependency_overrides.clear()


@pytest.fixture
async def client(wiring):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_health_check(client):
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["app"] == "hack_timeline"
    assert data["scheduler"] == "idle"
    assert data["tag_cache"] == "memory"


@pytest.mark.asyncio
async def test_api_index_lists_kinds(client):
    resp = await client.get("/api/v1")
    assert resp.status_code == 200
    assert resp.json()["kinds"] == ["hacking", "transfer"]


@pytest.mark.asyncio
async def test_scrape_then_read_timeline(client, wiring):
    resp = await client.post("/api/v1/hacking/scrape-new-infos", params={"limit": "10"})
    assert resp.status_code == 200
    assert resp.json() == {
        "message": "Successfully processed 3 new infos.",
        "processed_count": 3,
        "error_count": 0,
    }

    resp = await client.get("/api/v1/hacking/infos", params={"infoNumber": "2"})
    assert resp.status_code == 200
    assert [r["message_id"] for r in resp.json()] == [3, 2]

    resp = await client.get(
        "/api/v1/hacking/infos/prev",
        params={"prevInfoID": "2", "infoNumber": "5", "tags": "token1"},
    )
    assert resp.status_code == 200
    assert [r["message_id"] for r in resp.json()] == [1]

    resp = await client.get("/api/v1/hacking/tags")
    assert resp.status_code == 200
    assert [t["name"] for t in resp.json()] == ["bridge", "token0", "token1"]


@pytest.mark.asyncio
async def test_scrape_with_nothing_new(client, wiring):
    wiring.gateway.posts = []
    resp = await client.post("/api/v1/hacking/scrape-new-infos", params={"limit": "10"})
    assert resp.status_code == 200
    assert resp.json()["message"] == "No new messages to process."


@pytest.mark.asyncio
async def test_partial_scrape_is_200_total_failure_is_500(client, wiring):
    wiring.extractor.fail_ids = {2}
    resp = await client.post("/api/v1/hacking/scrape-new-infos", params={"limit": "10"})
    assert resp.status_code == 200
    assert resp.json()["message"] == "Scraping completed with 1 errors."

    resp = await client.post("/api/v1/hacking/scrape-new-infos", params={"limit": "10"})
    assert resp.status_code == 500
    assert resp.json() == {
        "message": "Scraping completed with 1 errors.",
        "processed_count": 0,
        "error_count": 1,
    }


@pytest.mark.asyncio
async def test_fetch_failure_reports_500(client, wiring, fetch_error):
    wiring.gateway.error = fetch_error("defimon")
    resp = await client.post("/api/v1/hacking/scrape-new-infos", params={"limit": "10"})
    assert resp.status_code == 500
    assert resp.json()["error_count"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("path, params, detail", [
    ("/api/v1/hacking/infos", {"infoNumber": "abc"}, "Invalid infoNumber format"),
    ("/api/v1/hacking/infos", {}, "Invalid infoNumber format"),
    ("/api/v1/hacking/infos", {"infoNumber": "0"}, "Invalid infoNumber format"),
    ("/api/v1/hacking/infos/prev", {"prevInfoID": "x", "infoNumber": "5"}, "Invalid prevInfoID format"),
    ("/api/v1/hacking/infos/prev", {"prevInfoID": "9", "infoNumber": "-1"}, "Invalid infoNumber format"),
])
async def test_invalid_parameters_are_400(client, path, params, detail):
    resp = await client.get(path, params=params)
    assert resp.status_code == 400
    assert resp.json()["detail"] == detail


@pytest.mark.asyncio
async def test_invalid_scrape_limit_is_400(client, wiring):
    resp = await client.post("/api/v1/hacking/scrape-new-infos", params={"limit": "ten"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid limit format"
    assert wiring.gateway.calls == []


@pytest.mark.asyncio
async def test_unknown_kind_is_404(client):
    resp = await client.get("/api/v1/nft/infos", params={"infoNumber": "5"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Unknown record kind: nft"


@pytest.mark.asyncio
async def test_store_failure_is_generic_500(client, wiring):
    wiring.store.list_by_tags = AsyncMock(side_effect=StoreError("failed to get hacking infos: disk I/O"))
    resp = await client.get("/api/v1/hacking/infos", params={"infoNumber": "5"})
    assert resp.status_code == 500
    assert resp.json()["detail"] == "Internal Server Error"


@pytest.mark.asyncio
async def test_retry_queue_list_and_discard(client, wiring):
    wiring.extractor.fail_ids = {2}
    await client.post("/api/v1/hacking/scrape-new-infos", params={"limit": "10"})

    resp = await client.get("/api/v1/hacking/retry-queue")
    assert resp.status_code == 200
    queued = resp.json()["defimon"]["queued"]
    assert [e["message_id"] for e in queued] == [2]
    assert queued[0]["attempts"] == 1
    assert "cannot extract 2" in queued[0]["last_error"]

    resp = await client.delete("/api/v1/hacking/retry-queue/defimon/2")
    assert resp.status_code == 200
    assert wiring.orchestrator.retry_queue("defimon") == []

    resp = await client.delete("/api/v1/hacking/retry-queue/defimon/2")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_dashboard_stats(client, wiring):
    store = MagicMock()
    store.get_stats = AsyncMock(return_value={
        "total_hacking_infos": 3, "total_transfer_infos": 0, "total_tags": 3, "watermarks": [],
    })
    app.dependency_overrides[get_repository] = lambda: store
    resp = await client.get("/api/v1/stats")
    assert resp.status_code == 200
    assert resp.json()["total_hacking_infos"] == 3


@pytest.mark.asyncio
async def test_scrape_uses_scheduler_run_adhoc(client, wiring):
    wiring.scheduler.run_adhoc = AsyncMock(return_value=CycleResult(kind="hacking", processed_count=4))
    resp = await client.post("/api/v1/hacking/scrape-new-infos", params={"limit": "7"})
    assert resp.status_code == 200
    wiring.scheduler.run_adhoc.assert_awaited_once_with("hacking", 7)


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    await client.get("/api/v1/health")
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "hack_timeline_http_requests_total" in resp.text
