"""
Source gateway abstract base class
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import aiohttp

from hack_timeline.config.settings import settings
from hack_timeline.models.message import SourcePost

logger = logging.getLogger(__name__)


class SourceGateway(ABC):
    """
    One polled channel of one record kind.

    `last_message_id` is the in-memory watermark owned by the scrape
    orchestrator; `scanned_message_id` is the highest message id the last
    fetch examined, including messages that did not convert into posts.
    """

    kind: str = ""

    def __init__(self, channel_username: str):
        self.channel_username = channel_username
        self._last_message_id = 0
        self.scanned_message_id = 0
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def last_message_id(self) -> int:
        return self._last_message_id

    @last_message_id.setter
    def last_message_id(self, value: int) -> None:
        self._last_message_id = int(value or 0)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=settings.telegram.request_timeout_seconds)
            self._session = aiohttp.ClientSession(
                timeout=timeout,
                headers={"User-Agent": settings.telegram.user_agent},
            )
        return self._session

    @abstractmethod
    async def fetch_new_posts(self, min_message_id: int, limit: int) -> List[SourcePost]:
        """Posts with message id > min_message_id, at most `limit` of them."""
        ...

    @abstractmethod
    async def health_check(self) -> Dict:
        ...

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
