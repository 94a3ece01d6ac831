"""
Pipeline error taxonomy.

Fetch errors are fatal to a whole cycle; extraction and store errors are
local to one post and keep it in the channel's retry queue.
"""

from typing import Optional


class TimelineError(RuntimeError):
    pass


class FetchError(TimelineError):
    def __init__(self, channel: str, message: str):
        super().__init__(f"failed to get posts from {channel}: {message}")
        self.channel = channel


class ExtractionError(TimelineError):
    def __init__(self, message: str, *, message_id: Optional[int] = None):
        super().__init__(message)
        self.message_id = message_id


class StoreError(TimelineError):
    pass


class CycleTimeoutError(TimelineError):
    def __init__(self, kind: str, pending_channels):
        channels = ", ".join(sorted(pending_channels))
        super().__init__(f"{kind} cycle timed out before channels completed: {channels}")
        self.kind = kind
        self.pending_channels = sorted(pending_channels)


class CacheCorruptionError(TimelineError):
    pass
