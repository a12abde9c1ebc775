"""
Batch Sinks - Side Effects for Fetched Batches

A sink receives every successfully fetched batch together with the window it
came from. Sinks run after the cursor has been saved; a failing sink is
reported by the poll loop but never rolls the cursor back.

Available sinks:
- CountingSink: running totals, used by the continuous poller
- XmlFileSink: one XML file per window, used by the backfill tool
- RedisEventSink: announces batches on a Redis channel
- CompositeSink: fans out to several sinks
"""

import logging
from pathlib import Path
from typing import Optional, Protocol

from livefeed.errors import PersistenceError, SinkError
from livefeed.mq import RedisPublisher
from livefeed.schemas import Batch, BatchEvent, QueryWindow, format_sortable

logger = logging.getLogger(__name__)

UNSAFE_FILENAME_CHARS = frozenset('<>:"/\\|?*')


def safe_filename(name: str, replacement: str = "_") -> str:
    """Replace characters that are invalid in file names on common filesystems."""
    return "".join(
        replacement if c in UNSAFE_FILENAME_CHARS or ord(c) < 32 else c
        for c in name
    )


class BatchSink(Protocol):
    async def consume(self, window: QueryWindow, batch: Batch) -> None: ...


class CountingSink:
    """Keeps running totals of received posts."""

    def __init__(self) -> None:
        self.batches = 0
        self.records = 0

    async def consume(self, window: QueryWindow, batch: Batch) -> None:
        self.batches += 1
        self.records += len(batch.records)
        logger.info("Received %d posts.", len(batch.records))


class XmlFileSink:
    """
    Write each non-empty batch payload to ``<output_dir>/<window start>.xml``.

    File names come from the window start in 'YYYY-MM-DD HH:MM:SSZ' form with
    unsafe characters replaced, e.g. ``2024-01-01 12_00_00Z.xml``. Starts with a
    sub-second part keep it (``2024-01-01 12_00_00.101000Z.xml``) so windows
    starting within the same second never share a file.
    """

    def __init__(self, output_dir: str | Path) -> None:
        self.output_dir = Path(output_dir)
        self.written: list[Path] = []

    def path_for(self, window: QueryWindow) -> Path:
        name = format_sortable(window.start)
        if window.start.microsecond:
            name = f"{name[:-1]}.{window.start.microsecond:06d}Z"
        return self.output_dir / (safe_filename(name) + ".xml")

    async def consume(self, window: QueryWindow, batch: Batch) -> None:
        """
        Raises:
            PersistenceError: If the output file can't be written
        """
        if batch.count == 0 or not batch.payload:
            return

        path = self.path_for(window)
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(batch.payload)
        except OSError as e:
            raise PersistenceError(f"Error writing to output file {path}: {e}") from e

        self.written.append(path)
        logger.info("Batch written: path=%s, count=%d", str(path), batch.count)


class RedisEventSink:
    """Publish a BatchEvent for every non-empty batch."""

    def __init__(
        self,
        publisher: RedisPublisher,
        channel: str,
        file_sink: Optional[XmlFileSink] = None,
    ) -> None:
        self.publisher = publisher
        self.channel = channel
        self.file_sink = file_sink

    async def consume(self, window: QueryWindow, batch: Batch) -> None:
        if batch.count == 0:
            return

        path = str(self.file_sink.path_for(window)) if self.file_sink else None
        event = BatchEvent(
            window_from=window.start,
            window_to=window.end,
            count=batch.count,
            path=path,
        )
        await self.publisher.publish_event(self.channel, event)


class CompositeSink:
    """Run every sink, then raise SinkError if any of them failed."""

    def __init__(self, *sinks: BatchSink) -> None:
        self.sinks = sinks

    async def consume(self, window: QueryWindow, batch: Batch) -> None:
        errors: list[Exception] = []
        for sink in self.sinks:
            try:
                await sink.consume(window, batch)
            except Exception as e:
                logger.error(
                    "Sink failed",
                    extra={"sink": type(sink).__name__, "error": str(e)},
                )
                errors.append(e)

        if errors:
            raise SinkError(f"{len(errors)} of {len(self.sinks)} sinks failed: {errors[0]}") from errors[0]
