"""Delivery transport contract used by the event delivery worker."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import DeliveryRequest

RawMessageT = TypeVar("RawMessageT")


class DeliveryTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Carries delivery requests to workers with at-least-once semantics.

    ``subscribe`` hands out a request together with the transport's raw
    handle for it. The request stays in flight until the consumer settles the
    handle with ``ack`` or ``requeue``; a consumer that dies first leaves the
    message to ``recover``, which puts it back on its topic. Requests carry a
    stable ``event_id``, so a message redelivered after its event was logged is
    reported as a duplicate by the engine rather than applied twice.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, request: DeliveryRequest) -> None:
        """Queue ``request`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, DeliveryRequest]]:
        """Yield ``(raw_message, request)`` pairs until ``lifespan`` seconds pass.

        With ``lifespan=None`` the subscription runs until cancelled.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Settle a handled message so it is never redelivered."""
        raise NotImplementedError

    async def requeue(
        self,
        topic: str,
        request: DeliveryRequest,
        raw_message: Optional[RawMessageT] = None,
    ) -> DeliveryRequest:
        """Publish the next attempt of ``request`` and settle the current one.

        The retry is published before the ack so a crash in between yields a
        duplicate delivery, never a lost one.
        """
        retry = request.bump_attempt()
        await self.publish(topic, retry)
        if raw_message is not None:
            await self.ack(raw_message)
        return retry

    async def recover(self, topic: str) -> int:
        """Return unsettled messages of ``topic`` to its queue; returns how many moved."""
        return 0
