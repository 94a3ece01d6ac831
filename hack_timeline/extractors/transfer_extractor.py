"""
Transfer extractor - transfer alerts are already structured by the gateway
"""

from hack_timeline.extractors.base import Extractor
from hack_timeline.models.errors import ExtractionError
from hack_timeline.models.message import ExtractionResult, SourcePost
from hack_timeline.models.record_kind import TRANSFER


class TransferExtractor(Extractor):

    kind = TRANSFER

    async def extract(self, post: SourcePost) -> ExtractionResult:
        token = str(getattr(post, "token", "") or "")
        if not token:
            raise ExtractionError("transfer post has no token", message_id=post.message_id)
        return ExtractionResult(
            fields={
                "token": token,
                "amount": getattr(post, "amount", ""),
                "from_address": getattr(post, "from_address", ""),
                "to_address": getattr(post, "to_address", ""),
            },
            tag_names=[*getattr(post, "tag_names", []), token.lower()],
        )
