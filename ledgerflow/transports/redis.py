"""Redis transport for cross-process event delivery."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..contracts import DeliveryRequest
from .base import DeliveryTransport

logger = logging.getLogger(__name__)

# (topic, message json)
RedisDelivery = Tuple[str, str]


class RedisTransport(DeliveryTransport[RedisDelivery]):
    """Redis lists used as reliable work queues.

    Producers ``LPUSH`` onto ``<prefix>:<topic>``. A consumer atomically moves
    each message onto its own processing list with ``BLMOVE`` and removes it
    from there on ``ack``. Messages a crashed consumer left in its processing
    list go back to the queue when a consumer with the same name subscribes
    again.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "ledgerflow",
        consumer: str = "default",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self.consumer = consumer
        self._redis: Optional[redis.Redis] = None

    def _queue(self, topic: str) -> str:
        return f"{self.prefix}:{topic}"

    def _processing(self, topic: str) -> str:
        return f"{self.prefix}:{topic}:processing:{self.consumer}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, request: DeliveryRequest) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self._queue(topic), request.to_json())

    async def recover(self, topic: str) -> int:
        if not self._redis:
            await self.connect()
        moved = 0
        # Newest first onto the consuming end, so the oldest is popped first.
        while await self._redis.lmove(
            self._processing(topic), self._queue(topic), src="LEFT", dest="RIGHT"
        ):
            moved += 1
        if moved:
            logger.warning(f"Recovered {moved} unacknowledged message(s) on {self._queue(topic)}")
        return moved

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RedisDelivery, DeliveryRequest]]:
        await self.recover(topic)
        queue_name = self._queue(topic)
        processing = self._processing(topic)
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            message_json = await self._redis.blmove(
                queue_name, processing, timeout=1, src="RIGHT", dest="LEFT"
            )
            if not message_json:
                continue
            try:
                request = DeliveryRequest.from_json(message_json)
            except PydanticValidationError as e:
                logger.error(f"Dropping malformed delivery request on {queue_name}: {e}")
                await self._redis.lrem(processing, 1, message_json)
                continue
            yield (topic, message_json), request

    async def ack(self, raw_message: RedisDelivery) -> None:
        topic, message_json = raw_message
        await self._redis.lrem(self._processing(topic), 1, message_json)
