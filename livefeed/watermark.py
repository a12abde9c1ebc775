"""
Watermark Advancer - Next Window Computation

Pure functions that turn a fetched batch into the next cursor and the next
query window. No I/O, no clock: the poll loop measures elapsed time and passes
it in, so every decision here is deterministic.

Rules:
- Empty batch: the cursor moves to the window end (continuous mode) or the
  range is exhausted (bounded mode).
- Non-empty batch: the cursor moves 1 ms past the last record, using the
  feed's sub-second offset, so the next window starts strictly after it.
- A full page (count >= max_count) may be truncated: re-query the same window
  end right away instead of sleeping.
"""

from datetime import datetime, timedelta
from enum import Enum

from livefeed.schemas import Batch, Exhausted, PollOutcome, Progress, QueryWindow


class PollMode(str, Enum):
    CONTINUOUS = "continuous"
    BOUNDED = "bounded"


def next_from(window: QueryWindow, batch: Batch) -> datetime:
    """
    Compute the cursor that follows ``batch``.

    The offset is taken in milliseconds and added through ``timedelta``, which
    rounds to the nearest microsecond. The result never falls before
    ``window.start`` even if the feed reports a last record outside the window.
    """
    if batch.count == 0:
        return window.end

    candidate = batch.last_record_at + timedelta(milliseconds=batch.last_record_offset_ms + 1)
    return max(candidate, window.start)


def pacing_delay_ms(interval_ms: float, elapsed_ms: float) -> int:
    """Remaining delay to keep a steady cadence: interval minus elapsed, never negative."""
    return max(0, int(interval_ms - elapsed_ms))


def advance(
    window: QueryWindow,
    batch: Batch,
    *,
    mode: PollMode,
    interval_ms: float = 0,
    elapsed_ms: float = 0,
) -> PollOutcome:
    """
    Decide what follows a successful fetch of ``window``.

    Args:
        window: Window that was just queried
        batch: Result of that query
        mode: Continuous polling or bounded backfill
        interval_ms: Pacing target between requests (continuous mode)
        elapsed_ms: How long the request took

    Returns:
        Progress with the new cursor, or Exhausted when a bounded range is done
    """
    bounded = mode is PollMode.BOUNDED
    pace_ms = 0 if bounded else pacing_delay_ms(interval_ms, elapsed_ms)

    if batch.count == 0:
        if bounded:
            return Exhausted()
        return Progress(next_from=window.end, next_window=None, sleep_ms=pace_ms, drain=False)

    start = next_from(window, batch)
    if start >= window.end:
        # [start, end) is empty, nothing left to ask for in this window
        if bounded:
            return Exhausted(reason="cursor reached range end")
        return Progress(next_from=start, next_window=None, sleep_ms=pace_ms, drain=False)

    following = window.with_start(start)
    if bounded or batch.count >= window.max_count:
        return Progress(next_from=start, next_window=following, sleep_ms=0, drain=True)

    return Progress(next_from=start, next_window=following, sleep_ms=pace_ms, drain=False)
