"""
Data models passed between gateways, extractors and the scrape orchestrator
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SourcePost:
    """One raw channel post, already shaped for extraction"""
    message_id: int = 0
    channel_username: str = ""
    report_time: datetime = field(default_factory=_utcnow)
    text: str = ""


@dataclass
class HackingPost(SourcePost):
    network: str = ""
    amount: str = ""
    tx_hash: str = ""


@dataclass
class TransferPost(SourcePost):
    token: str = ""
    amount: str = ""
    from_address: str = ""
    to_address: str = ""
    tag_names: List[str] = field(default_factory=list)


@dataclass
class ExtractionResult:
    """Structured fields + tag names extracted from one post"""
    fields: Dict[str, str] = field(default_factory=dict)
    tag_names: List[str] = field(default_factory=list)


@dataclass
class RetryEntry:
    post: SourcePost
    attempts: int = 0
    last_error: str = ""


@dataclass
class CycleResult:
    """Outcome of one scrape cycle across all channels of one kind"""
    kind: str = ""
    processed_count: int = 0
    errors: List[Exception] = field(default_factory=list)
    fetched_count: int = 0
    retried_count: int = 0

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def ok(self) -> bool:
        return not self.errors
