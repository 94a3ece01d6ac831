"""
Extractor abstract base class
"""

from abc import ABC, abstractmethod

from hack_timeline.models.message import ExtractionResult, SourcePost


class Extractor(ABC):
    """Turns one source post into record fields + tag names"""

    kind: str = ""

    @abstractmethod
    async def extract(self, post: SourcePost) -> ExtractionResult:
        """Raise ExtractionError when the post cannot be turned into a record."""
        ...

    async def close(self):
        pass
