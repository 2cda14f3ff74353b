"""
Order Pipeline — idempotency store

The queue delivers at least once, so every consumer records the ids of
envelopes it has fully processed in Redis, with a TTL longer than the
queue's retry horizon.

Known property: when Redis is unreachable the store fails open and
reports "not seen". The pipeline stays live but a redelivery during the
outage may be processed twice. The orders table's unique
``source_event_id`` still stops a second order for the same checkout.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

KEY_PREFIX = "webhook:dedup:"
DEFAULT_TTL_SECONDS = 3600

T = TypeVar("T")


class IdempotencyStore:
    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(event_id: str) -> str:
        return f"{KEY_PREFIX}{event_id}"

    async def seen(self, event_id: str) -> bool:
        try:
            return await self.redis.exists(self.key(event_id)) == 1
        except RedisError:
            logger.warning(
                "Idempotency store unavailable, treating %s as not seen "
                "(duplicate processing possible)",
                event_id,
                exc_info=True,
            )
            return False

    async def mark_seen(self, event_id: str, ttl_seconds: int | None = None) -> None:
        try:
            await self.redis.set(self.key(event_id), "1", ex=ttl_seconds or self.ttl_seconds)
        except RedisError:
            logger.warning(
                "Idempotency store unavailable, could not mark %s as processed",
                event_id,
                exc_info=True,
            )

    async def run_once(
        self, event_id: str, processor: Callable[[], Awaitable[T]]
    ) -> tuple[bool, T | None]:
        """Run ``processor`` unless ``event_id`` was already processed.

        Returns ``(processed, result)``. A failing processor leaves no record
        so the next delivery retries it.
        """
        if await self.seen(event_id):
            logger.info("Event %s already processed, skipping", event_id)
            return False, None
        result = await processor()
        await self.mark_seen(event_id)
        return True, result
