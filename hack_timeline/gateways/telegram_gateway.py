"""
Telegram channel gateways backed by the public web preview (t.me/s/<channel>)

The preview pages list up to ~20 messages per request; `?after=<id>` pages
forward from a watermark and `?before=<id>` looks up older messages.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

import aiohttp
from bs4 import BeautifulSoup

from hack_timeline.config.settings import settings
from hack_timeline.gateways.base import SourceGateway
from hack_timeline.models.errors import FetchError
from hack_timeline.models.message import HackingPost, SourcePost, TransferPost
from hack_timeline.models.record_kind import HACKING, TRANSFER

logger = logging.getLogger(__name__)

_TRANSFER_RE = re.compile(
    r"(?P<amount>\d[\d,]*(?:\.\d+)?)\s+#?(?P<token>[A-Za-z][A-Za-z0-9]{1,15})\b"
    r".*?transferred\s+from\s+(?P<from>.+?)\s+to\s+(?P<to>[^\n]+)",
    re.IGNORECASE | re.DOTALL,
)
_HASHTAG_RE = re.compile(r"#(\w+)")


@dataclass
class PreviewMessage:
    message_id: int
    text: str
    report_time: datetime
    reply_to_id: Optional[int] = None


def parse_preview_page(html: str) -> List[PreviewMessage]:
    """Parse the message widgets of one preview page, ascending by id."""
    soup = BeautifulSoup(html or "", "html.parser")
    messages: List[PreviewMessage] = []
    for node in soup.select("div.tgme_widget_message[data-post]"):
        _, _, raw_id = str(node.get("data-post", "")).rpartition("/")
        if not raw_id.isdigit():
            continue

        text_node = node.select_one(".js-message_text")
        text = text_node.get_text("\n", strip=True) if text_node else ""

        report_time = datetime.now(timezone.utc)
        time_node = node.select_one("time[datetime]")
        if time_node is not None:
            try:
                report_time = datetime.fromisoformat(str(time_node["datetime"]))
            except ValueError:
                logger.debug("Unparseable datetime on message %s", raw_id)
            if report_time.tzinfo is None:
                report_time = report_time.replace(tzinfo=timezone.utc)

        reply_to_id = None
        reply_node = node.select_one("a.tgme_widget_message_reply[href]")
        if reply_node is not None:
            _, _, reply_raw = str(reply_node["href"]).split("?")[0].rpartition("/")
            if reply_raw.isdigit():
                reply_to_id = int(reply_raw)

        messages.append(PreviewMessage(
            message_id=int(raw_id),
            text=text,
            report_time=report_time,
            reply_to_id=reply_to_id,
        ))
    messages.sort(key=lambda m: m.message_id)
    return messages


def parse_hacking_alert(text: str) -> Optional[Dict[str, str]]:
    """
    Pull network / tx hash / amount out of an exploit alert:
      "... Network: ethereum ... Exploit: 0xabc... Balance change: 1,234 USD"
    Returns None when the Balance marker is missing.
    """
    tokens = (text or "").split()
    fields = {"network": "", "tx_hash": "", "amount": ""}
    for i, token in enumerate(tokens):
        if token == "Network:" and i + 1 < len(tokens):
            fields["network"] = tokens[i + 1]
        elif token == "Exploit:" and i + 1 < len(tokens):
            fields["tx_hash"] = tokens[i + 1]
        elif token == "Balance" and i + 2 < len(tokens):
            fields["amount"] = tokens[i + 2]
            return fields
    return None


def parse_transfer_message(text: str) -> Optional[Dict[str, object]]:
    """Parse "<amount> #<TOKEN> ... transferred from <from> to <to>" alerts."""
    match = _TRANSFER_RE.search(text or "")
    if not match:
        return None
    token = match.group("token").upper()
    hashtags = [h.lower() for h in _HASHTAG_RE.findall(text)]
    tag_names: List[str] = []
    for name in [token.lower(), *hashtags]:
        if name not in tag_names:
            tag_names.append(name)
    return {
        "amount": match.group("amount").replace(",", ""),
        "token": token,
        "from_address": match.group("from").strip().lstrip("#"),
        "to_address": match.group("to").strip().lstrip("#"),
        "tag_names": tag_names,
    }


class TelegramPreviewGateway(SourceGateway):
    """Pages through a channel's public preview and converts messages into posts"""

    def _page_url(self) -> str:
        base = settings.telegram.preview_base_url.rstrip("/")
        return f"{base}/{self.channel_username}"

    async def _get_page(self, params: Dict[str, int]) -> List[PreviewMessage]:
        session = await self._get_session()
        try:
            async with session.get(self._page_url(), params=params) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    raise FetchError(
                        self.channel_username,
                        f"preview status={resp.status}: {detail[:200]}",
                    )
                html = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(self.channel_username, f"preview request failed: {e}") from e
        return parse_preview_page(html)

    async def fetch_new_posts(self, min_message_id: int, limit: int) -> List[SourcePost]:
        """
        Page forward from `min_message_id` until `limit` posts are collected or
        the page budget runs out. Messages that do not convert into posts do not
        count against `limit`.
        """
        if limit <= 0:
            return []
        after = int(min_message_id or 0)
        scanned_through = after
        known: Dict[int, PreviewMessage] = {}
        posts: List[SourcePost] = []
        pages = 0
        for _ in range(max(1, settings.telegram.max_pages_per_fetch)):
            page = [m for m in await self._get_page({"after": after}) if m.message_id > after]
            if not page:
                break
            pages += 1
            for message in page:
                known[message.message_id] = message
            posts.extend(await self._convert_messages(page, known))
            after = scanned_through = page[-1].message_id
            if len(posts) >= limit:
                break

        posts.sort(key=lambda p: p.message_id)
        if len(posts) > limit:
            # Keep the lowest ids so the scanned range has no gaps
            posts = posts[:limit]
            scanned_through = posts[-1].message_id
        self.scanned_message_id = scanned_through
        logger.info(
            "Channel %s: scanned %d pages after %d through %d, %d posts",
            self.channel_username, pages, min_message_id, scanned_through, len(posts),
        )
        return posts

    async def _convert_messages(
        self,
        messages: List[PreviewMessage],
        known: Dict[int, PreviewMessage],
    ) -> List[SourcePost]:
        return [
            SourcePost(
                message_id=m.message_id,
                channel_username=self.channel_username,
                report_time=m.report_time,
                text=m.text,
            )
            for m in messages if m.text
        ]

    async def health_check(self) -> Dict:
        try:
            session = await self._get_session()
            async with session.get(self._page_url()) as resp:
                return {
                    "status": "healthy" if resp.status == 200 else "unhealthy",
                    "channel": self.channel_username,
                    "http_status": resp.status,
                }
        except Exception as e:
            return {"status": "unhealthy", "channel": self.channel_username, "error": str(e)}


class HackingPostGateway(TelegramPreviewGateway):
    """
    Exploit alert channel. Commentary messages reply to a machine alert; the
    alert supplies network / tx hash / amount, the reply supplies the text.
    """

    kind = HACKING

    async def _lookup_message(
        self,
        message_id: int,
        known: Dict[int, PreviewMessage],
    ) -> Optional[PreviewMessage]:
        if message_id in known:
            return known[message_id]
        for message in await self._get_page({"before": message_id + 1}):
            known.setdefault(message.message_id, message)
        return known.get(message_id)

    async def _convert_messages(
        self,
        messages: List[PreviewMessage],
        known: Dict[int, PreviewMessage],
    ) -> List[SourcePost]:
        posts: List[SourcePost] = []
        for message in messages:
            if not message.text or message.reply_to_id is None:
                continue
            alert = await self._lookup_message(message.reply_to_id, known)
            if alert is None or alert.reply_to_id is not None:
                continue
            fields = parse_hacking_alert(alert.text)
            if fields is None:
                logger.debug(
                    "Channel %s: message %d does not reply to an exploit alert",
                    self.channel_username, message.message_id,
                )
                continue
            posts.append(HackingPost(
                message_id=message.message_id,
                channel_username=self.channel_username,
                report_time=alert.report_time,
                text=message.text,
                **fields,
            ))
        return posts


class TransferPostGateway(TelegramPreviewGateway):
    """Large-transfer alert channel"""

    kind = TRANSFER

    async def _convert_messages(
        self,
        messages: List[PreviewMessage],
        known: Dict[int, PreviewMessage],
    ) -> List[SourcePost]:
        posts: List[SourcePost] = []
        for message in messages:
            parsed = parse_transfer_message(message.text)
            if parsed is None:
                continue
            posts.append(TransferPost(
                message_id=message.message_id,
                channel_username=self.channel_username,
                report_time=message.report_time,
                text=message.text,
                **parsed,
            ))
        return posts


GATEWAY_REGISTRY: Dict[str, type] = {
    HACKING: HackingPostGateway,
    TRANSFER: TransferPostGateway,
}


def build_gateways(kind: str, channels: List[str]) -> List[SourceGateway]:
    cls = GATEWAY_REGISTRY[kind]
    return [cls(channel) for channel in channels]
