"""
Cursor Store - Durable "fetch everything after this instant" Watermark

The cursor is one UTC timestamp. The file store keeps it as a single ISO-8601
string and replaces the file atomically, so a crash mid-write leaves either the
previous value or the new one.

Usage:
    from livefeed.cursor import FileCursorStore, resolve_start_cursor

    store = FileCursorStore("nextfrom_timestamp.txt")
    cursor = resolve_start_cursor(store, now=utc_now(), lookback=timedelta(minutes=60))
"""

import logging
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Protocol

from livefeed.errors import ParseError, PersistenceError
from livefeed.schemas import format_timestamp, parse_timestamp, to_utc

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK = timedelta(minutes=60)


class CursorStore(Protocol):
    """Persistence for the poll loop's cursor. Values are opaque UTC timestamps."""

    def load(self) -> Optional[datetime]: ...

    def save(self, cursor: datetime) -> None: ...


class FileCursorStore:
    """Cursor kept in a small text file, written via temp file + os.replace."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def read(self) -> Optional[datetime]:
        """
        Read the persisted cursor.

        Returns:
            The cursor, or None if the file doesn't exist

        Raises:
            PersistenceError: If the file exists but can't be read
            ParseError: If the content is not a timestamp
        """
        if not self.path.exists():
            return None

        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"Failed to read cursor file {self.path}: {e}") from e

        try:
            return parse_timestamp(text)
        except ValueError as e:
            raise ParseError(f"Malformed cursor in {self.path}: {text.strip()!r}") from e

    def load(self) -> Optional[datetime]:
        """Read the cursor, treating an unreadable or malformed file as absent."""
        try:
            return self.read()
        except (PersistenceError, ParseError) as e:
            logger.warning(
                "Ignoring persisted cursor, using default lookback",
                extra={"cursor_file": str(self.path), "error": str(e)},
            )
            return None

    def save(self, cursor: datetime) -> None:
        """
        Persist the cursor atomically.

        Raises:
            PersistenceError: If the file can't be written
        """
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(format_timestamp(cursor))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Failed to write cursor file {self.path}: {e}") from e

        logger.debug("Cursor saved: %s", format_timestamp(cursor))


class MemoryCursorStore:
    """In-process cursor store, keeps every saved value in ``history``."""

    def __init__(self, cursor: Optional[datetime] = None) -> None:
        self.cursor = to_utc(cursor) if cursor is not None else None
        self.history: list[datetime] = []

    def load(self) -> Optional[datetime]:
        return self.cursor

    def save(self, cursor: datetime) -> None:
        self.cursor = to_utc(cursor)
        self.history.append(self.cursor)


def resolve_start_cursor(
    store: CursorStore,
    *,
    now: datetime,
    lookback: timedelta = DEFAULT_LOOKBACK,
) -> datetime:
    """Persisted cursor if there is one, otherwise ``now - lookback``."""
    cursor = store.load()
    if cursor is not None:
        logger.info("Resuming from persisted cursor: %s", format_timestamp(cursor))
        return to_utc(cursor)

    start = to_utc(now) - lookback
    logger.info(
        "No persisted cursor, starting %d minutes back: %s",
        int(lookback.total_seconds() // 60),
        format_timestamp(start),
    )
    return start
