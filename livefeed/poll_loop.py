"""
Poll Loop - Incremental Feed Polling State Machine

Drives repeated feed calls for one cursor:

    Idle -> Querying -> Advancing -> (Sleeping | Querying | Terminated)
                 `-> Failed -> (wait retry delay) -> Idle

- Continuous mode: window end is "now minus skew", the cursor is saved after
  every successful fetch, requests are paced to a target interval.
- Bounded mode: window end is fixed, the loop ends once a request comes back
  empty.

Fetch failures (TransportError, ParseError) never touch the cursor; they are
logged and retried after a fixed delay, forever unless a failure budget is
configured. Cancellation is cooperative through an asyncio.Event checked at
Idle and awaited while sleeping; an in-flight fetch is never interrupted.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from livefeed.cursor import CursorStore
from livefeed.errors import FeedUnavailableError, ParseError, PersistenceError, TransportError
from livefeed.feed import FeedPort
from livefeed.schemas import (
    Batch,
    Exhausted,
    PollOutcome,
    Progress,
    QueryWindow,
    TransientFailure,
    format_sortable,
    format_timestamp,
    to_utc,
    utc_now,
)
from livefeed.sinks import BatchSink
from livefeed.watermark import PollMode, advance

logger = logging.getLogger(__name__)


class PollState(str, Enum):
    IDLE = "idle"
    QUERYING = "querying"
    ADVANCING = "advancing"
    SLEEPING = "sleeping"
    FAILED = "failed"
    TERMINATED = "terminated"


@dataclass
class PollStats:
    started_at: datetime
    windows: int = 0
    records: int = 0
    failures: int = 0
    consecutive_failures: int = 0
    sink_failures: int = 0
    cursor_save_failures: int = 0
    last_window_end: Optional[datetime] = None


class PollLoop:
    """
    Sequential poller for a single cursor.

    Only one fetch is outstanding at a time; windows are processed in order so
    the cursor only ever moves forward.
    """

    def __init__(
        self,
        feed: FeedPort,
        sink: BatchSink,
        *,
        api_key: str,
        mode: PollMode,
        max_count: int,
        start: datetime,
        end: Optional[datetime] = None,
        cursor_store: Optional[CursorStore] = None,
        interval_seconds: float = 240,
        skew_seconds: float = 300,
        retry_delay_seconds: float = 60,
        max_consecutive_failures: int = 0,
        clock: Callable[[], datetime] = utc_now,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Initialize the loop.

        Args:
            feed: Feed client
            sink: Receives every fetched batch
            api_key: Key passed to the feed
            mode: Continuous polling or bounded backfill
            max_count: Page cap per request
            start: Initial cursor
            end: Fixed range end, required in bounded mode
            cursor_store: Where the cursor is saved (continuous mode)
            interval_seconds: Pacing target between requests
            skew_seconds: Margin subtracted from now for the window end
            retry_delay_seconds: Wait after a failed fetch
            max_consecutive_failures: Give up after this many failures in a row, 0 = never
            clock: Source of the current UTC time
            stop_event: Shared cancellation event, created if omitted
        """
        if max_count <= 0:
            raise ValueError(f"max_count must be positive, got {max_count}")
        if mode is PollMode.BOUNDED and end is None:
            raise ValueError("bounded mode requires an end timestamp")

        self.feed = feed
        self.sink = sink
        self.api_key = api_key
        self.mode = mode
        self.max_count = max_count
        self.end = to_utc(end) if end is not None else None
        self.cursor_store = cursor_store
        self.interval_ms = interval_seconds * 1000
        self.skew = timedelta(seconds=skew_seconds)
        self.retry_delay_ms = int(retry_delay_seconds * 1000)
        self.max_consecutive_failures = max_consecutive_failures
        self.clock = clock

        self.cursor = to_utc(start)
        self.state = PollState.IDLE
        self.stats = PollStats(started_at=clock())
        self._stop = stop_event or asyncio.Event()

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop

    def stop(self) -> None:
        """Request the loop to finish at its next transition point."""
        self._stop.set()

    def next_window(self) -> Optional[QueryWindow]:
        """Window starting at the cursor, or None if it would be empty."""
        if self.mode is PollMode.CONTINUOUS:
            end = self.clock() - self.skew
        else:
            end = self.end

        if self.cursor >= end:
            return None
        return QueryWindow(start=self.cursor, end=end, max_count=self.max_count)

    async def run(self) -> PollStats:
        """
        Poll until stopped (continuous) or until the range is exhausted (bounded).

        Returns:
            Statistics for the run

        Raises:
            FeedUnavailableError: If a failure budget is set and exhausted
        """
        logger.info(
            "Poll loop started",
            extra={
                "mode": self.mode.value,
                "cursor": format_timestamp(self.cursor),
                "max_count": self.max_count,
            },
        )

        pending: Optional[QueryWindow] = None
        while True:
            self.state = PollState.IDLE
            if self._stop.is_set():
                logger.info("Stop requested, leaving poll loop")
                break

            window = pending if pending is not None else self.next_window()
            pending = None
            if window is None:
                if self.mode is PollMode.BOUNDED:
                    break
                logger.debug("Cursor is ahead of the window end, waiting for the next cycle")
                await self._sleep(int(self.interval_ms))
                continue

            outcome = await self.poll_once(window)

            if isinstance(outcome, TransientFailure):
                self.state = PollState.FAILED
                await self._sleep(outcome.retry_after_ms)
                continue

            if isinstance(outcome, Exhausted):
                logger.info("Finished: total number of posts %d", self.stats.records)
                break

            if outcome.drain:
                logger.info("There is possibly more data available, trying again immediately")
                pending = outcome.next_window
                continue

            if outcome.sleep_ms > 0:
                self.state = PollState.SLEEPING
                logger.info(
                    "Have fetched %d posts between %s and %s since startup. Going to sleep for %d ms.",
                    self.stats.records,
                    format_sortable(self.stats.started_at),
                    format_sortable(window.end),
                    outcome.sleep_ms,
                )
                await self._sleep(outcome.sleep_ms)

        self.state = PollState.TERMINATED
        return self.stats

    async def poll_once(self, window: QueryWindow) -> PollOutcome:
        """Fetch one window, advance and persist the cursor, route the batch."""
        self.state = PollState.QUERYING
        logger.info("%s - %s - Trying to fetch data", format_sortable(window.start), format_sortable(window.end))

        started = time.monotonic()
        try:
            batch = await self.feed.fetch(self.api_key, window)
        except (TransportError, ParseError) as e:
            return self._record_failure(window, e)
        elapsed_ms = (time.monotonic() - started) * 1000

        self.state = PollState.ADVANCING
        self.stats.consecutive_failures = 0
        self.stats.windows += 1
        self.stats.records += batch.count
        self.stats.last_window_end = window.end

        outcome = advance(
            window,
            batch,
            mode=self.mode,
            interval_ms=self.interval_ms,
            elapsed_ms=elapsed_ms,
        )
        logger.info(
            "%s - %s - got %d posts - total number of posts: %d",
            format_sortable(window.start),
            format_sortable(window.end),
            batch.count,
            self.stats.records,
        )

        if isinstance(outcome, Progress):
            self._commit(outcome.next_from)

        await self._route(window, batch)
        return outcome

    def _record_failure(self, window: QueryWindow, error: Exception) -> TransientFailure:
        self.state = PollState.FAILED
        self.stats.failures += 1
        self.stats.consecutive_failures += 1

        logger.error(
            "Got some kind of exception.. %s. Will retry in %d seconds",
            error,
            self.retry_delay_ms // 1000,
            extra={
                "error_type": type(error).__name__,
                "from": format_timestamp(window.start),
                "to": format_timestamp(window.end),
                "consecutive_failures": self.stats.consecutive_failures,
            },
        )

        if 0 < self.max_consecutive_failures <= self.stats.consecutive_failures:
            raise FeedUnavailableError(self.stats.consecutive_failures, error) from error

        return TransientFailure(retry_after_ms=self.retry_delay_ms, error=str(error))

    def _commit(self, cursor: datetime) -> None:
        """Move the cursor forward and persist it before the batch is routed."""
        self.cursor = cursor
        if self.mode is not PollMode.CONTINUOUS or self.cursor_store is None:
            return

        try:
            self.cursor_store.save(cursor)
        except PersistenceError as e:
            self.stats.cursor_save_failures += 1
            logger.error(
                "Failed to persist cursor, continuing with in-memory value",
                extra={"cursor": format_timestamp(cursor), "error": str(e)},
            )

    async def _route(self, window: QueryWindow, batch: Batch) -> None:
        try:
            await self.sink.consume(window, batch)
        except Exception as e:
            self.stats.sink_failures += 1
            logger.error(
                "Batch sink failed; cursor already advanced past this window",
                extra={
                    "from": format_timestamp(window.start),
                    "to": format_timestamp(window.end),
                    "count": batch.count,
                    "error": str(e),
                },
                exc_info=True,
            )

    async def _sleep(self, ms: int) -> None:
        """Wait ``ms`` milliseconds or until stop is requested."""
        if ms <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=ms / 1000)
        except asyncio.TimeoutError:
            pass
