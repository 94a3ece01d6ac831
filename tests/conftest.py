"""
Test fixtures
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import pytest

from hack_timeline.extractors.base import Extractor
from hack_timeline.gateways.base import SourceGateway
from hack_timeline.models.errors import ExtractionError, FetchError, StoreError
from hack_timeline.models.message import ExtractionResult, HackingPost, SourcePost
from hack_timeline.services.timeline_store import TimelineRepository, normalize_tag_names

BASE_TIME = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_post(message_id: int, channel: str = "chan_a", text: str = "") -> HackingPost:
    return HackingPost(
        message_id=message_id,
        channel_username=channel,
        report_time=BASE_TIME + timedelta(minutes=message_id),
        text=text or f"exploit report {message_id}",
        network="ethereum",
        amount="1000",
        tx_hash=f"0x{message_id:04x}",
    )


def preview_message(channel, message_id, text, when="2025-06-26T01:02:03+00:00", reply_to=None) -> str:
    """One message widget as rendered by the t.me/s/<channel> preview."""
    reply = ""
    if reply_to is not None:
        reply = (
            f'<a class="tgme_widget_message_reply" href="https://t.me/{channel}/{reply_to}">'
            f'<div class="tgme_widget_message_text js-message_reply_text">quoted</div></a>'
        )
    return (
        f'<div class="tgme_widget_message_wrap js-widget_message_wrap">'
        f'<div class="tgme_widget_message js-widget_message" data-post="{channel}/{message_id}">'
        f'{reply}'
        f'<div class="tgme_widget_message_text js-message_text" dir="auto">{text}</div>'
        f'<div class="tgme_widget_message_footer"><a class="tgme_widget_message_date" '
        f'href="https://t.me/{channel}/{message_id}"><time datetime="{when}" class="time">01:02</time></a></div>'
        f'</div></div>'
    )


def preview_page(*messages) -> str:
    return "<html><body><section class=\"tgme_channel_history\">" + "".join(messages) + "</section></body></html>"


class FakeGateway(SourceGateway):
    """In-memory channel returning pre-seeded posts"""

    kind = "hacking"

    def __init__(
        self,
        channel_username: str,
        posts: Iterable[SourcePost] = (),
        error: Optional[Exception] = None,
        delay: float = 0.0,
        scanned_through: Optional[int] = None,
    ):
        super().__init__(channel_username)
        self.posts = list(posts)
        self.error = error
        self.delay = delay
        self.scanned_through = scanned_through
        self.calls: List[Dict] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def fetch_new_posts(self, min_message_id: int, limit: int) -> List[SourcePost]:
        self.calls.append({"min_message_id": min_message_id, "limit": limit})
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            fresh = sorted(
                (p for p in self.posts if p.message_id > min_message_id),
                key=lambda p: p.message_id,
            )[:limit]
            scanned = max([min_message_id, *(p.message_id for p in fresh)])
            if self.scanned_through is not None:
                scanned = max(scanned, self.scanned_through)
            self.scanned_message_id = scanned
            return fresh
        finally:
            self.in_flight -= 1

    async def health_check(self) -> Dict:
        return {"status": "healthy", "channel": self.channel_username}

    async def close(self):
        self.closed = True


class FakeExtractor(Extractor):
    """Deterministic extractor; fails for ids in `fail_ids`"""

    kind = "hacking"

    def __init__(self, fail_ids: Iterable[int] = (), delays: Optional[Dict[str, float]] = None):
        self.fail_ids = set(fail_ids)
        self.delays = delays or {}
        self.calls: List[int] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def extract(self, post: SourcePost) -> ExtractionResult:
        self.calls.append(post.message_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(post.channel_username, 0))
            if post.message_id in self.fail_ids:
                raise ExtractionError(f"cannot extract {post.message_id}", message_id=post.message_id)
            return ExtractionResult(
                fields={
                    "protocol": f"Protocol {post.message_id}",
                    "network": getattr(post, "network", ""),
                    "amount": getattr(post, "amount", ""),
                    "tx_hash": getattr(post, "tx_hash", ""),
                },
                tag_names=["Bridge", f"token{post.message_id % 2}"],
            )
        finally:
            self.in_flight -= 1


class FakeStore:
    """Dict-backed stand-in for TimelineRepository"""

    def __init__(self, fail_message_ids: Iterable[int] = ()):
        self.fail_message_ids = set(fail_message_ids)
        self.records: List[Dict] = []
        self.watermarks: Dict[tuple, int] = {}
        self.watermark_writes: List[tuple] = []
        self.tags: Dict[str, int] = {}

    async def insert_record(self, kind: str, record: Dict, tag_names) -> int:
        if record["message_id"] in self.fail_message_ids:
            raise StoreError(f"failed to store {kind} info: simulated")
        names = normalize_tag_names(tag_names)
        for name in names:
            self.tags.setdefault(name, len(self.tags) + 1)
        info_id = len(self.records) + 1
        self.records.append({
            "id": info_id,
            "kind": kind,
            **record,
            "tags": [{"id": self.tags[n], "name": n} for n in sorted(names)],
        })
        return info_id

    def stored_message_ids(self, channel: Optional[str] = None) -> List[int]:
        return sorted(
            r["message_id"] for r in self.records
            if channel is None or r["channel_username"] == channel
        )

    async def get_watermark(self, kind: str, channel_username: str):
        key = (kind, channel_username)
        if key not in self.watermarks:
            return None
        return {"kind": kind, "channel_username": channel_username, "last_message_id": self.watermarks[key]}

    async def insert_watermark(self, kind: str, channel_username: str, last_message_id: int = 0):
        self.watermarks[(kind, channel_username)] = last_message_id
        self.watermark_writes.append(("insert", channel_username, last_message_id))

    async def update_watermark(self, kind: str, channel_username: str, last_message_id: int):
        self.watermarks[(kind, channel_username)] = last_message_id
        self.watermark_writes.append(("update", channel_username, last_message_id))

    async def list_by_tags(self, kind, tag_names, limit):
        return await self.list_by_tags_before(kind, tag_names, 0, limit)

    async def list_by_tags_before(self, kind, tag_names, cursor_id, limit):
        names = set(normalize_tag_names(tag_names))
        rows = [
            r for r in reversed(self.records)
            if r["kind"] == kind
            and (cursor_id <= 0 or r["id"] < cursor_id)
            and (not names or names & {t["name"] for t in r["tags"]})
        ]
        return rows[:limit]

    async def list_all_tags(self):
        return [{"id": i, "name": n} for n, i in sorted(self.tags.items())]


@pytest.fixture
async def repo():
    """In-memory SQLite timeline repository for testing."""
    repo = TimelineRepository(db_url="sqlite+aiosqlite:///:memory:")
    await repo.init_db()
    yield repo
    await repo.close()


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def fetch_error():
    def _make(channel: str) -> FetchError:
        return FetchError(channel, "channel unreachable")
    return _make
