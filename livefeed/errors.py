"""
Error Types - Poller Exception Hierarchy

All errors raised by the feed client, cursor store and sinks derive from
LiveFeedError so the poll loop can tell transient failures from fatal ones:

- TransportError, ParseError: transient, retried by the poll loop
- PersistenceError, SinkError: logged, never block the next cycle
- ArgumentError: fatal at startup, before any polling
- FeedUnavailableError: raised only when a failure budget is configured
"""


class LiveFeedError(Exception):
    """Base exception for the poller."""


class TransportError(LiveFeedError):
    """Network or protocol failure calling the feed service."""


class ParseError(LiveFeedError):
    """Malformed feed response or malformed persisted cursor."""


class PersistenceError(LiveFeedError):
    """Cursor or batch write failure."""


class SinkError(PersistenceError):
    """One or more batch sinks failed to consume a batch."""


class ArgumentError(LiveFeedError):
    """Invalid command-line arguments for the backfill tool."""


class FeedUnavailableError(LiveFeedError):
    """The feed kept failing past MAX_CONSECUTIVE_FAILURES."""

    def __init__(self, failures: int, last_error: Exception) -> None:
        self.failures = failures
        self.last_error = last_error
        super().__init__(f"Feed failed {failures} consecutive times, last error: {last_error}")
