"""
Real-time paged data streams.
"""

from exprsn_core.streaming.engine import (
    Stream,
    StreamConfig,
    StreamEngine,
    StreamStatus,
    page_cache_key,
)

__all__ = [
    "Stream",
    "StreamConfig",
    "StreamEngine",
    "StreamStatus",
    "page_cache_key",
]
