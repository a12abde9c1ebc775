"""End-to-end poll loop runs against scripted and simulated feeds."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path

import httpx
import pytest

from livefeed.cursor import FileCursorStore, MemoryCursorStore, resolve_start_cursor
from livefeed.errors import FeedUnavailableError, ParseError, PersistenceError, TransportError
from livefeed.feed import LiveFeedClient
from livefeed.poll_loop import PollLoop, PollState
from livefeed.sinks import XmlFileSink
from livefeed.watermark import PollMode
from tests.conftest import T0, FixedClock, RecordingSink, ScriptedFeed, SimulatedFeed, make_batch

pytestmark = pytest.mark.asyncio


class BrokenCursorStore(MemoryCursorStore):
    def save(self, cursor: datetime) -> None:
        raise PersistenceError("read-only filesystem")


def continuous_loop(feed, sink, clock, **kwargs) -> PollLoop:
    options = dict(
        api_key="key",
        mode=PollMode.CONTINUOUS,
        max_count=1000,
        start=T0,
        interval_seconds=0,
        skew_seconds=300,
        retry_delay_seconds=0,
        clock=clock,
    )
    options.update(kwargs)
    return PollLoop(feed, sink, **options)


def stop_then(loop: PollLoop, batch):
    """Feed response that requests a stop and returns ``batch``."""

    def respond(window):
        loop.stop()
        return batch

    return respond


class TestContinuous:
    async def test_first_run_without_cursor_file(self, tmp_path: Path, sink: RecordingSink) -> None:
        """No cursor file: start an hour back, an empty result moves the cursor to the window end."""
        now = T0 + timedelta(hours=2)
        store = FileCursorStore(tmp_path / "nextfrom_timestamp.txt")
        start = resolve_start_cursor(store, now=now)
        assert start == now - timedelta(minutes=60)

        feed = ScriptedFeed()
        loop = continuous_loop(feed, sink, FixedClock(now), start=start, cursor_store=store)
        feed.responses = [stop_then(loop, make_batch(0))]

        await loop.run()

        [window] = feed.windows
        assert window.start == now - timedelta(minutes=60)
        assert window.end == now - timedelta(minutes=5)
        assert window.max_count == 1000
        assert store.load() == window.end
        assert (tmp_path / "nextfrom_timestamp.txt").read_text(encoding="utf-8") == "2024-01-01T01:55:00.000000Z"
        assert loop.state is PollState.TERMINATED

    async def test_full_page_drains_same_window_end(self, sink: RecordingSink, clock: FixedClock) -> None:
        feed = ScriptedFeed()
        loop = continuous_loop(feed, sink, clock, max_count=1000, interval_seconds=240)
        last = T0 + timedelta(minutes=30)
        feed.responses = [
            make_batch(1000, last_at=last, offset_ms=0),
            stop_then(loop, make_batch(0)),
        ]

        await loop.run()

        first, second = feed.windows
        assert second.end == first.end
        assert second.start == last + timedelta(milliseconds=1)
        assert loop.stats.records == 1000

    async def test_partial_page_sleeps_before_next_request(self, sink: RecordingSink, clock: FixedClock) -> None:
        feed = ScriptedFeed(make_batch(3, last_at=T0 + timedelta(minutes=1)))
        loop = continuous_loop(feed, sink, clock, interval_seconds=3600)

        task = asyncio.create_task(loop.run())
        for _ in range(20):
            await asyncio.sleep(0)

        assert feed.calls == 1
        assert loop.state is PollState.SLEEPING

        loop.stop()
        await asyncio.wait_for(task, timeout=1)
        assert feed.calls == 1

    async def test_transport_failures_leave_cursor_untouched(self, tmp_path: Path, sink: RecordingSink, clock: FixedClock) -> None:
        path = tmp_path / "nextfrom_timestamp.txt"
        store = FileCursorStore(path)
        store.save(T0)
        feed = ScriptedFeed(TransportError("timeout"), TransportError("timeout"), TransportError("timeout"))
        loop = continuous_loop(feed, sink, clock, start=store.load(), cursor_store=store)

        task = asyncio.create_task(loop.run())
        while feed.calls < 3:
            await asyncio.sleep(0)

        assert not task.done()
        assert path.read_text(encoding="utf-8") == "2024-01-01T00:00:00.000000Z"
        assert loop.cursor == T0
        assert loop.stats.failures >= 3
        assert all(w.start == T0 for w in feed.windows)
        assert sink.received == []

        loop.stop()
        await asyncio.wait_for(task, timeout=1)

    async def test_recovers_after_parse_error(self, sink: RecordingSink, clock: FixedClock) -> None:
        feed = ScriptedFeed()
        store = MemoryCursorStore()
        loop = continuous_loop(feed, sink, clock, cursor_store=store)
        feed.responses = [
            ParseError("truncated document"),
            stop_then(loop, make_batch(0)),
        ]

        await loop.run()

        assert feed.windows[0] == feed.windows[1]
        assert loop.stats.failures == 1
        assert loop.stats.consecutive_failures == 0
        assert store.history == [feed.windows[1].end]

    async def test_failure_budget_raises(self, sink: RecordingSink, clock: FixedClock) -> None:
        feed = ScriptedFeed(TransportError("connection refused"))
        loop = continuous_loop(feed, sink, clock, max_consecutive_failures=3)

        with pytest.raises(FeedUnavailableError) as excinfo:
            await loop.run()

        assert excinfo.value.failures == 3
        assert feed.calls == 3

    async def test_sink_failure_does_not_roll_back_cursor(self, clock: FixedClock) -> None:
        sink = RecordingSink(fail=True)
        store = MemoryCursorStore()
        feed = ScriptedFeed()
        loop = continuous_loop(feed, sink, clock, cursor_store=store)
        last = T0 + timedelta(minutes=10)
        feed.responses = [
            make_batch(5, last_at=last, offset_ms=0),
            stop_then(loop, make_batch(0)),
        ]

        await loop.run()

        assert store.history[0] == last + timedelta(milliseconds=1)
        assert feed.windows[1].start == last + timedelta(milliseconds=1)
        assert loop.stats.sink_failures == 2

    async def test_cursor_save_failure_keeps_polling(self, sink: RecordingSink, clock: FixedClock) -> None:
        feed = ScriptedFeed()
        loop = continuous_loop(feed, sink, clock, cursor_store=BrokenCursorStore())
        last = T0 + timedelta(minutes=10)
        feed.responses = [
            make_batch(5, last_at=last, offset_ms=0),
            stop_then(loop, make_batch(0)),
        ]

        await loop.run()

        assert loop.stats.cursor_save_failures == 2
        assert feed.windows[1].start == last + timedelta(milliseconds=1)

    async def test_cursor_ahead_of_window_end_waits(self, sink: RecordingSink) -> None:
        clock = FixedClock(T0 + timedelta(minutes=1))
        feed = ScriptedFeed(make_batch(0))
        loop = continuous_loop(feed, sink, clock, interval_seconds=3600)

        task = asyncio.create_task(loop.run())
        for _ in range(20):
            await asyncio.sleep(0)

        assert feed.calls == 0

        loop.stop()
        await asyncio.wait_for(task, timeout=1)
        assert loop.state is PollState.TERMINATED

    async def test_malformed_feed_response_is_retried(self, sink: RecordingSink, clock: FixedClock) -> None:
        responses = iter(
            [
                b'<posts noOfPosts="1" lastPost="2024-01-01T00:00:00Z" lastPostMs="NaN"/>',
                b'<posts noOfPosts="-1"/>',
                b'<posts noOfPosts="0"/>',
            ]
        )
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, content=next(responses))))
        store = MemoryCursorStore()

        async with LiveFeedClient("http://feed.test/LiveFeed2.asmx", max_retries=0, http_client=http) as client:
            loop = continuous_loop(client, sink, clock, cursor_store=store, interval_seconds=3600)
            task = asyncio.create_task(loop.run())
            while not store.history and not task.done():
                await asyncio.sleep(0)
            loop.stop()
            await asyncio.wait_for(task, timeout=1)

        assert loop.stats.failures == 2
        assert loop.stats.windows == 1
        assert store.history == [clock.now - timedelta(minutes=5)]

    async def test_stop_before_start_makes_no_requests(self, sink: RecordingSink, clock: FixedClock) -> None:
        feed = ScriptedFeed(make_batch(0))
        loop = continuous_loop(feed, sink, clock)
        loop.stop()

        await loop.run()

        assert feed.calls == 0


class TestBounded:
    async def test_empty_first_result_terminates_without_files(self, tmp_path: Path) -> None:
        feed = ScriptedFeed(make_batch(0))
        sink = XmlFileSink(tmp_path)
        loop = PollLoop(
            feed,
            sink,
            api_key="key",
            mode=PollMode.BOUNDED,
            max_count=100,
            start=T0,
            end=T0 + timedelta(hours=1),
        )

        stats = await loop.run()

        assert feed.calls == 1
        assert stats.records == 0
        assert list(tmp_path.iterdir()) == []

    async def test_writes_one_file_per_non_empty_window(self, tmp_path: Path) -> None:
        feed = ScriptedFeed(
            make_batch(2, last_at=T0 + timedelta(minutes=10)),
            make_batch(1, last_at=T0 + timedelta(minutes=20)),
            make_batch(0),
        )
        sink = XmlFileSink(tmp_path)
        loop = PollLoop(
            feed,
            sink,
            api_key="key",
            mode=PollMode.BOUNDED,
            max_count=100,
            start=T0,
            end=T0 + timedelta(hours=1),
        )

        stats = await loop.run()

        assert stats.records == 3
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "2024-01-01 00_00_00Z.xml",
            "2024-01-01 00_10_00.001000Z.xml",
        ]
        assert all(w.end == T0 + timedelta(hours=1) for w in feed.windows)

    async def test_windows_starting_in_same_second_get_separate_files(self, tmp_path: Path) -> None:
        feed = ScriptedFeed(
            make_batch(5, last_at=T0, offset_ms=100),
            make_batch(5, last_at=T0, offset_ms=400),
            make_batch(0),
        )
        sink = XmlFileSink(tmp_path)
        loop = PollLoop(
            feed,
            sink,
            api_key="key",
            mode=PollMode.BOUNDED,
            max_count=5,
            start=T0,
            end=T0 + timedelta(hours=1),
        )

        await loop.run()

        assert [w.start for w in feed.windows] == [
            T0,
            T0 + timedelta(milliseconds=101),
            T0 + timedelta(milliseconds=401),
        ]
        assert sorted(p.name for p in tmp_path.iterdir()) == [
            "2024-01-01 00_00_00.101000Z.xml",
            "2024-01-01 00_00_00Z.xml",
        ]
        assert len(set(sink.written)) == len(sink.written) == 2

    async def test_requires_end(self, sink: RecordingSink) -> None:
        with pytest.raises(ValueError):
            PollLoop(ScriptedFeed(), sink, api_key="k", mode=PollMode.BOUNDED, max_count=10, start=T0)

    async def test_rejects_non_positive_max_count(self, sink: RecordingSink) -> None:
        with pytest.raises(ValueError):
            PollLoop(ScriptedFeed(), sink, api_key="k", mode=PollMode.BOUNDED, max_count=0, start=T0, end=T0 + timedelta(hours=1))


def post_instants() -> list[datetime]:
    """Posts spread over an hour, several sharing the same whole second, at least 1 ms apart."""
    instants = []
    for minute in range(0, 60, 3):
        second = T0 + timedelta(minutes=minute, seconds=7)
        for ms in (0, 125, 250, 251, 999):
            instants.append(second + timedelta(milliseconds=ms))
    return instants


class TestProperties:
    @pytest.mark.parametrize("max_count", [1, 3, 7, 1000])
    async def test_bounded_run_delivers_every_post_once(self, max_count: int, sink: RecordingSink) -> None:
        instants = post_instants()
        feed = SimulatedFeed(instants)
        loop = PollLoop(
            feed,
            sink,
            api_key="key",
            mode=PollMode.BOUNDED,
            max_count=max_count,
            start=T0,
            end=T0 + timedelta(hours=1),
        )

        stats = await asyncio.wait_for(loop.run(), timeout=5)

        assert feed.delivered == sorted(instants)
        assert stats.records == len(instants)

        starts = [w.start for w in feed.windows]
        assert starts == sorted(starts)
        assert len(set(starts)) == len(starts)
        assert all(w.end == T0 + timedelta(hours=1) for w in feed.windows)

    async def test_continuous_cursor_is_monotonic(self, sink: RecordingSink) -> None:
        instants = post_instants()
        feed = SimulatedFeed(instants)
        clock = FixedClock(T0 + timedelta(minutes=20))
        store = MemoryCursorStore()
        loop = continuous_loop(feed, sink, clock, max_count=2, cursor_store=store, skew_seconds=0)

        task = asyncio.create_task(loop.run())
        for minutes in (20, 40, 65):
            clock.now = T0 + timedelta(minutes=minutes)
            for _ in range(200):
                await asyncio.sleep(0)
        loop.stop()
        await asyncio.wait_for(task, timeout=1)

        assert store.history == sorted(store.history)
        assert store.history[-1] == T0 + timedelta(minutes=65)
        assert feed.delivered == sorted(instants)
