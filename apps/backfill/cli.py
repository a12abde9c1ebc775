"""
Backfill Command Line - One-Shot Range Fetch

Fetches every post in an explicit [from, to) range and writes one XML file
per request window, then exits.

Exit codes:
- 0: range exhausted (or stopped by SIGINT/SIGTERM)
- 1: unexpected failure
- 2: invalid arguments, nothing was fetched or written
"""

import asyncio
import logging
import signal
import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from livefeed.config import Settings, settings
from livefeed.errors import ArgumentError
from livefeed.feed import FeedPort, LiveFeedClient
from livefeed.logging import setup_logging
from livefeed.poll_loop import PollLoop, PollStats
from livefeed.schemas import format_sortable, parse_sortable, utc_now
from livefeed.sinks import XmlFileSink
from livefeed.watermark import PollMode

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillArgs:
    api_key: str
    start: datetime
    end: datetime
    max_count: int


def usage(default_max_count: int = settings.BACKFILL_DEFAULT_MAX_COUNT) -> str:
    return "\n".join(
        [
            "",
            'python -m apps.backfill "<apikey>" "<from timestamp>" "<to timestamp>" [<maximum number of posts>]',
            f"   timestamps should be given in the format: '{format_sortable(utc_now())}'",
            f"   maximum number of posts is optional - it defaults to {default_max_count}",
        ]
    )


def _parse_timestamp_arg(name: str, raw: str) -> datetime:
    try:
        return parse_sortable(raw)
    except ValueError as e:
        raise ArgumentError(f"Error parsing {name} timestamp {raw!r}: expected 'YYYY-MM-DD HH:MM:SSZ'") from e


def parse_args(argv: Sequence[str], default_max_count: int = settings.BACKFILL_DEFAULT_MAX_COUNT) -> BackfillArgs:
    """
    Validate positional arguments: apiKey, from, to and optional maxCount.

    Raises:
        ArgumentError: If arguments are missing, malformed, or from >= to
    """
    if len(argv) < 3:
        raise ArgumentError("Missing arguments")
    if len(argv) > 4:
        raise ArgumentError(f"Too many arguments: expected at most 4, got {len(argv)}")

    api_key = argv[0].strip()
    if not api_key:
        raise ArgumentError("API key must not be empty")

    start = _parse_timestamp_arg("from", argv[1])
    end = _parse_timestamp_arg("to", argv[2])

    max_count = default_max_count
    if len(argv) == 4:
        try:
            max_count = int(argv[3])
        except ValueError:
            max_count = 0
        if max_count < 1:
            raise ArgumentError(f"Bad value for parameter maximum number of posts: {argv[3]}")

    if start >= end:
        raise ArgumentError("from must be earlier than to")

    return BackfillArgs(api_key=api_key, start=start, end=end, max_count=max_count)


async def run(
    args: BackfillArgs,
    *,
    config: Settings = settings,
    feed: Optional[FeedPort] = None,
    output_dir: Optional[str] = None,
    install_signal_handlers: bool = True,
) -> PollStats:
    """
    Fetch the whole range, writing each window to ``output_dir``.

    Args:
        args: Validated arguments
        config: Settings for retry delay, endpoint and output directory
        feed: Feed client, a LiveFeedClient for FEED_ENDPOINT_URL if omitted
        output_dir: Overrides config.OUTPUT_DIR
        install_signal_handlers: Stop on SIGINT/SIGTERM

    Returns:
        Statistics of the finished loop
    """
    owns_feed = feed is None
    if feed is None:
        feed = LiveFeedClient(
            config.FEED_ENDPOINT_URL,
            namespace=config.FEED_SOAP_NAMESPACE,
            timeout_seconds=config.FEED_TIMEOUT,
            max_retries=config.FEED_MAX_RETRIES,
            user_agent=f"{config.APP_NAME}/{config.APP_VERSION}",
        )

    sink = XmlFileSink(output_dir or config.OUTPUT_DIR)
    poll_loop = PollLoop(
        feed,
        sink,
        api_key=args.api_key,
        mode=PollMode.BOUNDED,
        max_count=args.max_count,
        start=args.start,
        end=args.end,
        retry_delay_seconds=config.BACKFILL_RETRY_DELAY_SECONDS,
        max_consecutive_failures=config.MAX_CONSECUTIVE_FAILURES,
    )

    if install_signal_handlers:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, poll_loop.stop)

    logger.info(
        "Backfill started: %s - %s, max %d posts per request",
        format_sortable(args.start),
        format_sortable(args.end),
        args.max_count,
    )

    try:
        stats = await poll_loop.run()
    finally:
        if owns_feed:
            await feed.close()

    logger.info(
        "Backfill complete: posts=%d, windows=%d, files=%d, failures=%d",
        stats.records,
        stats.windows,
        len(sink.written),
        stats.failures,
    )
    return stats


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the backfill tool."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    argv = list(sys.argv[1:] if argv is None else argv)

    try:
        args = parse_args(argv)
    except ArgumentError as e:
        print(f"Error parsing parameters: {e}. Make sure you stated timestamps in the given format, and that from < to", file=sys.stderr)
        print(usage(), file=sys.stderr)
        return 2

    try:
        asyncio.run(run(args))
    except Exception as e:
        logger.error("Backfill failed", extra={"error": str(e)}, exc_info=True)
        return 1

    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
