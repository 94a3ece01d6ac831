"""
Hacking extractor - asks the LLM for the exploited protocol and involved tokens
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from hack_timeline.context.prompt_templates import (
    NO_TOKENS, involved_tokens_prompt, protocol_name_prompt,
)
from hack_timeline.extractors.base import Extractor
from hack_timeline.models.errors import ExtractionError
from hack_timeline.models.message import ExtractionResult, SourcePost
from hack_timeline.models.record_kind import HACKING
from hack_timeline.services.llm_client import LLMCallError, LLMServiceClient

logger = logging.getLogger(__name__)


def parse_protocol_names(raw: str) -> Optional[Tuple[str, str]]:
    """"Original Name,cleaned" -> (original, cleaned); None when malformed."""
    line = next((ln.strip() for ln in (raw or "").splitlines() if ln.strip()), "")
    original, sep, cleaned = line.partition(",")
    original, cleaned = original.strip(), cleaned.strip().lower()
    if not sep or not original or not cleaned:
        return None
    return original, cleaned


def parse_token_tickers(raw: str) -> List[str]:
    """Comma-separated tickers, lowercased; "N/A" or blank means none."""
    text = (raw or "").strip()
    if not text or text.upper() == NO_TOKENS:
        return []
    return [t.strip().lower() for t in text.split(",") if t.strip()]


class HackingExtractor(Extractor):

    kind = HACKING

    def __init__(self, llm: Optional[LLMServiceClient] = None):
        self.llm = llm or LLMServiceClient()

    async def extract(self, post: SourcePost) -> ExtractionResult:
        try:
            protocol_raw, tokens_raw = await asyncio.gather(
                self.llm.generate_sync(protocol_name_prompt(post.text)),
                self.llm.generate_sync(involved_tokens_prompt(post.text)),
            )
        except LLMCallError as e:
            raise ExtractionError(f"llm call failed: {e}", message_id=post.message_id) from e

        names = parse_protocol_names(protocol_raw)
        if names is None:
            raise ExtractionError(
                f"malformed protocol name response: {protocol_raw!r}",
                message_id=post.message_id,
            )
        original, cleaned = names
        tokens = parse_token_tickers(tokens_raw)
        logger.debug("Message %d: protocol=%s tokens=%s", post.message_id, original, tokens)

        return ExtractionResult(
            fields={
                "protocol": original,
                "network": getattr(post, "network", ""),
                "amount": getattr(post, "amount", ""),
                "tx_hash": getattr(post, "tx_hash", ""),
            },
            tag_names=[*tokens, cleaned],
        )

    async def close(self):
        await self.llm.close()
