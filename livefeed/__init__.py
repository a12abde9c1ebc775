"""
LiveFeed - Incremental Feed Polling Library

Shared building blocks for the continuous poller and the backfill tool:
- schemas: windows, batches and poll outcomes
- watermark: next-cursor computation
- poll_loop: the polling state machine
- feed, cursor, sinks: feed transport, cursor persistence and batch outputs
"""

from livefeed.schemas import Batch, FeedRecord, QueryWindow
from livefeed.watermark import PollMode, advance, next_from

__all__ = [
    "Batch",
    "FeedRecord",
    "QueryWindow",
    "PollMode",
    "advance",
    "next_from",
]
