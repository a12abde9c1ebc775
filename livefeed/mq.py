"""
Batch Event Publisher - Redis Pub/Sub

Announces fetched batches on a Redis channel so downstream consumers can pick
up new output files without watching the directory.

Features:
- Lazy connection with a pooled redis.asyncio client
- orjson payloads (events are pydantic models dumped in JSON mode)
- Retries on Redis connection errors (tenacity)

Usage:
    async with RedisPublisher(settings.REDIS_URL) as publisher:
        await publisher.publish_event(settings.REDIS_CHANNEL_BATCHES, event)
"""

import logging
from typing import Any, Optional

import orjson
import redis.asyncio as redis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from livefeed.config import settings
from livefeed.schemas import BatchEvent

logger = logging.getLogger(__name__)


class RedisPublisher:
    """Publishes batch events to Redis channels."""

    def __init__(self, redis_url: Optional[str] = None, max_connections: Optional[int] = None) -> None:
        """
        Args:
            redis_url: Redis connection URL, defaults to settings.REDIS_URL
            max_connections: Pool size, defaults to settings.REDIS_MAX_CONNECTIONS
        """
        self.redis_url = redis_url or settings.REDIS_URL
        self.max_connections = max_connections or settings.REDIS_MAX_CONNECTIONS
        self.client: Optional[redis.Redis] = None
        self.published = 0

    async def __aenter__(self) -> "RedisPublisher":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        if self.client is None:
            self.client = redis.from_url(
                self.redis_url,
                max_connections=self.max_connections,
                decode_responses=False,
            )

    @retry(
        retry=retry_if_exception_type((redis.ConnectionError, redis.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """
        Publish a JSON message.

        Returns:
            Number of subscribers that received it

        Raises:
            redis.RedisError: If publishing still fails after retries
        """
        if self.client is None:
            await self.connect()

        receivers = await self.client.publish(channel, orjson.dumps(message))
        self.published += 1
        logger.debug(
            "Published event",
            extra={"channel": channel, "message_type": message.get("type"), "receivers": receivers},
        )
        return receivers

    async def publish_event(self, channel: str, event: BatchEvent) -> int:
        return await self.publish(channel, event.model_dump(mode="json"))

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None
