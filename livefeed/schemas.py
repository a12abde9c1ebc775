"""
Pydantic Schemas - Data Validation Models

Defines the data model shared by the feed client, the watermark advancer,
the poll loop and the sinks:
- Timestamps (always UTC-normalized)
- Query windows and fetched batches
- Poll outcomes produced by the watermark advancer
- Redis batch events

Usage:
    from livefeed.schemas import QueryWindow

    window = QueryWindow(start=cursor, end=utc_now() - skew, max_count=1000)
"""

from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Sortable "u" layout used on the backfill command line and in output file names
SORTABLE_FORMAT = "%Y-%m-%d %H:%M:%SZ"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC.

    Raises:
        ValueError: If the datetime is naive
    """
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"timestamp must be timezone-aware: {value!r}")
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp and normalize it to UTC.

    Accepts the forms written by the cursor store and by the feed:
    - 2024-01-01T00:00:00.251500Z
    - 2024-01-01T00:00:00.2515000Z (seven fractional digits)
    - 2024-01-01T02:00:00+02:00
    Naive values are taken to be UTC.
    """
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Round-trippable ISO-8601 form of a timestamp, in UTC with a Z suffix."""
    return to_utc(value).isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_sortable(value: str) -> datetime:
    """Parse 'YYYY-MM-DD HH:MM:SSZ' as a UTC timestamp."""
    return datetime.strptime(value, SORTABLE_FORMAT).replace(tzinfo=timezone.utc)


def format_sortable(value: datetime) -> str:
    return to_utc(value).strftime(SORTABLE_FORMAT)


class QueryWindow(BaseModel):
    """A [start, end) range submitted to the feed, capped at max_count records.

    An empty window (start >= end) cannot be constructed.
    """

    model_config = ConfigDict(frozen=True)

    start: datetime = Field(..., description="Inclusive lower bound (the cursor)")
    end: datetime = Field(..., description="Exclusive upper bound")
    max_count: int = Field(..., gt=0, description="Page cap")

    @field_validator("start", "end")
    @classmethod
    def normalize_utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @model_validator(mode="after")
    def check_bounds(self) -> "QueryWindow":
        if self.start >= self.end:
            raise ValueError(f"empty window: start {self.start.isoformat()} >= end {self.end.isoformat()}")
        return self

    def with_start(self, start: datetime) -> "QueryWindow":
        return QueryWindow(start=start, end=self.end, max_count=self.max_count)


class FeedRecord(BaseModel):
    """One post returned by the feed."""

    model_config = ConfigDict(frozen=True)

    url: str = Field(..., description="Post URL")
    timestamp: Optional[datetime] = Field(default=None, description="Post timestamp, when the feed sends one")

    @field_validator("timestamp")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc(v) if v is not None else None


class Batch(BaseModel):
    """Result of one feed call.

    The last-record fields are present exactly when count > 0. ``payload`` keeps
    the response document as received so sinks can store it verbatim.
    """

    model_config = ConfigDict(frozen=True)

    count: int = Field(..., ge=0, description="Number of records the feed reports")
    records: tuple[FeedRecord, ...] = Field(default=(), description="Records, oldest first")
    last_record_at: Optional[datetime] = Field(default=None, description="Coarse timestamp of the last record")
    last_record_offset_ms: Optional[float] = Field(default=None, allow_inf_nan=False, description="Sub-second offset of the last record")
    payload: Optional[bytes] = Field(default=None, description="Serialized response document")

    @field_validator("last_record_at")
    @classmethod
    def normalize_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_utc(v) if v is not None else None

    @model_validator(mode="after")
    def check_last_record(self) -> "Batch":
        has_last = self.last_record_at is not None and self.last_record_offset_ms is not None
        if self.count > 0 and not has_last:
            raise ValueError("non-empty batch requires last_record_at and last_record_offset_ms")
        if self.count == 0 and (self.last_record_at is not None or self.last_record_offset_ms is not None):
            raise ValueError("empty batch cannot carry last-record fields")
        return self


class Progress(BaseModel):
    """The cursor moved; query again after ``sleep_ms``.

    ``drain`` means the same window end must be re-queried right away because
    more records may still be pending in it. ``next_window`` is None when
    [next_from, end) is empty and the next window has to wait for a new end.
    """

    model_config = ConfigDict(frozen=True)

    next_from: datetime
    next_window: Optional[QueryWindow] = None
    sleep_ms: int = Field(default=0, ge=0)
    drain: bool = False


class Exhausted(BaseModel):
    """Bounded range fully consumed."""

    model_config = ConfigDict(frozen=True)

    reason: str = "no more records"


class TransientFailure(BaseModel):
    """A fetch failed; the cursor is unchanged and the call is retried later."""

    model_config = ConfigDict(frozen=True)

    retry_after_ms: int = Field(..., ge=0)
    error: str


PollOutcome = Union[Progress, Exhausted, TransientFailure]


class BatchEvent(BaseModel):
    """Redis Pub/Sub event announcing a fetched batch.

    {
        "type": "batch_fetched",
        "window_from": "2024-01-01T00:00:00Z",
        "window_to": "2024-01-01T00:55:00Z",
        "count": 250,
        "path": "/data/out/2024-01-01 00_00_00Z.xml",
        "ts": "2024-01-01T01:00:02Z"
    }
    """

    type: str = Field(default="batch_fetched", description="Event type")
    window_from: datetime = Field(..., description="Window start")
    window_to: datetime = Field(..., description="Window end")
    count: int = Field(..., ge=0, description="Records in the batch")
    path: Optional[str] = Field(default=None, description="Output file, when one was written")
    ts: datetime = Field(default_factory=utc_now, description="Timestamp")
