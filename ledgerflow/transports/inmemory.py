"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..contracts import DeliveryRequest
from .base import DeliveryTransport

# (topic, queued request)
RawDelivery = Tuple[str, DeliveryRequest]


class InMemoryTransport(DeliveryTransport[RawDelivery]):
    """In-process FIFO queues keyed by topic, with in-flight tracking."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[DeliveryRequest]] = defaultdict(deque)
        self._inflight: Dict[str, List[DeliveryRequest]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval
        self.acked: list[str] = []

    async def publish(self, topic: str, request: DeliveryRequest) -> None:
        async with self._lock:
            self._queues[topic].append(request.model_copy(deep=True))

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])

    def unacked(self, topic: str) -> int:
        return len(self._inflight[topic])

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawDelivery, DeliveryRequest]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                request = self._queues[topic].popleft() if self._queues[topic] else None
                if request is not None:
                    self._inflight[topic].append(request)
            if request is not None:
                # Hand out a fresh copy so consumers cannot mutate the queued one.
                yield (topic, request), DeliveryRequest.from_json(request.to_json())
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: RawDelivery) -> None:
        topic, request = raw_message
        async with self._lock:
            self._inflight[topic] = [r for r in self._inflight[topic] if r is not request]
        self.acked.append(request.message_id)

    async def recover(self, topic: str) -> int:
        async with self._lock:
            stranded = self._inflight.pop(topic, [])
            self._queues[topic].extendleft(reversed(stranded))
        return len(stranded)
