"""
Poller Service - Continuous Polling with Heartbeat and Graceful Shutdown

Runs the continuous poll loop until SIGINT/SIGTERM, with an APScheduler
interval job that logs progress while the loop sleeps or works.

Features:
- Cursor resume from CURSOR_FILE, default lookback otherwise
- Status heartbeat every STATUS_INTERVAL_SECONDS (0 disables it)
- Optional Redis batch events when REDIS_URL is set
- Graceful shutdown: the stop signal is honoured between fetches

Usage:
    FEED_API_KEY=... python -m apps.poller
"""

import asyncio
import logging
import signal
import sys
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from livefeed.config import Settings, settings
from livefeed.cursor import CursorStore, FileCursorStore, resolve_start_cursor
from livefeed.feed import FeedPort, LiveFeedClient
from livefeed.logging import setup_logging
from livefeed.mq import RedisPublisher
from livefeed.poll_loop import PollLoop, PollStats
from livefeed.schemas import format_sortable, format_timestamp, utc_now
from livefeed.sinks import BatchSink, CompositeSink, CountingSink, RedisEventSink
from livefeed.watermark import PollMode

logger = logging.getLogger(__name__)


class PollerService:
    """
    Continuous poller for one cursor file.

    Handles:
    - Poll loop construction from settings
    - APScheduler heartbeat job
    - Signal handling for graceful shutdown
    """

    def __init__(
        self,
        config: Settings = settings,
        feed: Optional[FeedPort] = None,
        cursor_store: Optional[CursorStore] = None,
        sink: Optional[BatchSink] = None,
    ) -> None:
        """
        Initialize the service.

        Args:
            config: Settings to build from
            feed: Feed client, a LiveFeedClient for FEED_ENDPOINT_URL if omitted
            cursor_store: Cursor persistence, FileCursorStore(CURSOR_FILE) if omitted
            sink: Batch sink, counting (+ Redis events) if omitted
        """
        self.config = config
        self.feed = feed
        self.cursor_store = cursor_store or FileCursorStore(config.CURSOR_FILE)
        self.sink = sink
        self.poll_loop: PollLoop | None = None
        self.scheduler: AsyncIOScheduler | None = None
        self.shutdown_event = asyncio.Event()
        self._publisher: RedisPublisher | None = None

        logger.info(
            "PollerService initialized",
            extra={
                "endpoint": config.FEED_ENDPOINT_URL,
                "cursor_file": config.CURSOR_FILE,
                "poll_interval_seconds": config.POLL_INTERVAL_SECONDS,
                "max_count": config.LIVE_MAX_COUNT,
            },
        )

    def build_sink(self) -> BatchSink:
        if self.sink is not None:
            return self.sink

        counting = CountingSink()
        if not self.config.REDIS_URL:
            return counting

        self._publisher = RedisPublisher(self.config.REDIS_URL, self.config.REDIS_MAX_CONNECTIONS)
        return CompositeSink(counting, RedisEventSink(self._publisher, self.config.REDIS_CHANNEL_BATCHES))

    def build_loop(self, feed: FeedPort) -> PollLoop:
        start = resolve_start_cursor(
            self.cursor_store,
            now=utc_now(),
            lookback=timedelta(minutes=self.config.DEFAULT_LOOKBACK_MINUTES),
        )
        return PollLoop(
            feed,
            self.build_sink(),
            api_key=self.config.FEED_API_KEY,
            mode=PollMode.CONTINUOUS,
            max_count=self.config.LIVE_MAX_COUNT,
            start=start,
            cursor_store=self.cursor_store,
            interval_seconds=self.config.POLL_INTERVAL_SECONDS,
            skew_seconds=self.config.SAFETY_SKEW_SECONDS,
            retry_delay_seconds=self.config.LIVE_RETRY_DELAY_SECONDS,
            max_consecutive_failures=self.config.MAX_CONSECUTIVE_FAILURES,
            stop_event=self.shutdown_event,
        )

    async def log_status(self) -> None:
        """Heartbeat job: log loop state and totals."""
        if self.poll_loop is None:
            return

        stats = self.poll_loop.stats
        logger.info(
            "Poller alive: state=%s, cursor=%s, posts since %s: %d, windows=%d, failures=%d",
            self.poll_loop.state.value,
            format_timestamp(self.poll_loop.cursor),
            format_sortable(stats.started_at),
            stats.records,
            stats.windows,
            stats.failures,
        )

    def start_heartbeat(self) -> None:
        interval = self.config.STATUS_INTERVAL_SECONDS
        if interval <= 0:
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.log_status,
            trigger=IntervalTrigger(seconds=interval),
            id="status_heartbeat",
            name="Poller Status Heartbeat",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("Heartbeat scheduled every %ds", interval)

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def start(self, install_signal_handlers: bool = True) -> PollStats:
        """
        Run the poll loop until shutdown is requested.

        Returns:
            Statistics of the finished loop

        Raises:
            ValueError: If FEED_API_KEY is not configured
        """
        if not self.config.FEED_API_KEY:
            raise ValueError("FEED_API_KEY is not configured")

        if install_signal_handlers:
            self.setup_signal_handlers()

        feed = self.feed
        owns_feed = feed is None
        if feed is None:
            feed = LiveFeedClient(
                self.config.FEED_ENDPOINT_URL,
                namespace=self.config.FEED_SOAP_NAMESPACE,
                timeout_seconds=self.config.FEED_TIMEOUT,
                max_retries=self.config.FEED_MAX_RETRIES,
                user_agent=f"{self.config.APP_NAME}/{self.config.APP_VERSION}",
            )

        try:
            self.poll_loop = self.build_loop(feed)
            self.start_heartbeat()
            stats = await self.poll_loop.run()
        finally:
            if self.scheduler:
                self.scheduler.shutdown(wait=False)
                self.scheduler = None
            if owns_feed:
                await feed.close()
            if self._publisher:
                await self._publisher.close()

        logger.info(
            "Poller shutdown complete",
            extra={"windows": stats.windows, "posts": stats.records, "failures": stats.failures},
        )
        return stats


async def main() -> None:
    """Main entry point for the continuous poller."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    service = PollerService()

    try:
        await service.start()
    except Exception as e:
        logger.error("Poller failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
