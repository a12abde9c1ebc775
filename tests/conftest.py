"""Shared fixtures: fixed timestamps, batch builders and fake feeds."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Union

import pytest

from livefeed.schemas import Batch, FeedRecord, QueryWindow

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_batch(count: int, last_at: datetime | None = None, offset_ms: float = 0.0) -> Batch:
    """Batch of ``count`` placeholder posts ending at ``last_at + offset_ms``."""
    if count == 0:
        return Batch(count=0, payload=b'<posts noOfPosts="0"/>')
    last_at = last_at or T0
    records = tuple(FeedRecord(url=f"https://example.com/post/{i}") for i in range(count))
    return Batch(
        count=count,
        records=records,
        last_record_at=last_at,
        last_record_offset_ms=offset_ms,
        payload=f'<posts noOfPosts="{count}"/>'.encode(),
    )


Response = Union[Batch, Exception, Callable[[QueryWindow], Batch]]


class ScriptedFeed:
    """Feed returning scripted responses in order; repeats the last one when exhausted."""

    def __init__(self, *responses: Response) -> None:
        self.responses = list(responses)
        self.windows: list[QueryWindow] = []
        self.api_keys: list[str] = []

    @property
    def calls(self) -> int:
        return len(self.windows)

    async def fetch(self, api_key: str, window: QueryWindow) -> Batch:
        await asyncio.sleep(0)
        self.windows.append(window)
        self.api_keys.append(api_key)
        index = min(len(self.windows), len(self.responses)) - 1
        response = self.responses[index]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(window)
        return response


class SimulatedFeed:
    """
    In-memory feed over a fixed set of posts.

    Each post has a coarse timestamp (whole seconds) plus a millisecond offset,
    like the real feed's lastPost/lastPostMs pair. Posts whose exact instant
    falls in [start, end) are returned oldest first, capped at max_count.
    """

    def __init__(self, instants: list[datetime]) -> None:
        self.instants = sorted(instants)
        self.windows: list[QueryWindow] = []
        self.delivered: list[datetime] = []

    async def fetch(self, api_key: str, window: QueryWindow) -> Batch:
        await asyncio.sleep(0)
        self.windows.append(window)
        matching = [t for t in self.instants if window.start <= t < window.end][: window.max_count]
        self.delivered.extend(matching)
        if not matching:
            return Batch(count=0, payload=b'<posts noOfPosts="0"/>')

        last = matching[-1]
        coarse = last.replace(microsecond=0)
        offset_ms = (last - coarse) / timedelta(milliseconds=1)
        return Batch(
            count=len(matching),
            records=tuple(FeedRecord(url=f"https://example.com/{t.isoformat()}", timestamp=t) for t in matching),
            last_record_at=coarse,
            last_record_offset_ms=offset_ms,
            payload=f'<posts noOfPosts="{len(matching)}"/>'.encode(),
        )


class RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.received: list[tuple[QueryWindow, Batch]] = []

    async def consume(self, window: QueryWindow, batch: Batch) -> None:
        self.received.append((window, batch))
        if self.fail:
            raise OSError("disk full")


class FixedClock:
    """Settable clock for continuous-mode window ends."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def t0() -> datetime:
    return T0


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(T0 + timedelta(hours=2))


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
