"""Deliver events published on a transport to the workflow engine."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .contracts import DeliveryRequest, DeliveryResult
from .engine import WorkflowEngine
from .errors import ConflictError, ExecutionClosedError, LedgerflowError
from .persistence.models import JsonDict
from .transports import DeliveryTransport
from .utils import retry

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "ledgerflow.events"


async def publish_event(
    transport: DeliveryTransport,
    tenant: str,
    execution_id: str,
    event_name: str,
    payload: Optional[JsonDict] = None,
    user_id: Optional[str] = None,
    *,
    topic: str = DEFAULT_TOPIC,
    event_id: Optional[str] = None,
) -> DeliveryRequest:
    """Queue an event for asynchronous delivery and return the request sent."""
    request = DeliveryRequest(
        tenant=tenant,
        execution_id=execution_id,
        event_name=event_name,
        payload=payload or {},
        user_id=user_id,
    )
    if event_id is not None:
        request.event_id = event_id
    await transport.publish(topic, request)
    logger.info(f"Queued {event_name} for execution {execution_id} on {topic}")
    return request


class EventDeliveryWorker:
    """Consume delivery requests and feed them to the engine.

    A message is acknowledged only after its delivery was settled, so a worker
    that dies mid-delivery leaves it for redelivery. A delivery that loses a
    race for an execution or an action key is requeued with backoff. The
    request keeps its ``event_id`` across attempts so a delivery that did
    commit before a crash is not applied twice.
    """

    def __init__(
        self,
        transport: DeliveryTransport,
        engine: WorkflowEngine,
        topic: str = DEFAULT_TOPIC,
        max_retries: int = 5,
        backoff_base: float = 0.5,
        backoff_cap: float = 30.0,
    ) -> None:
        self._transport = transport
        self._engine = engine
        self.topic = topic
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.processed = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Listen on ``topic`` until ``lifespan`` seconds elapse (forever if None)."""
        logger.info(f"Worker listening on {self.topic}")
        async for raw_message, request in self._transport.subscribe(self.topic, lifespan=lifespan):
            await self.handle(request, raw_message)
            self.processed += 1

    async def handle(
        self, request: DeliveryRequest, raw_message: Any = None
    ) -> Optional[DeliveryResult]:
        """Deliver one request; returns ``None`` when it was requeued or dropped.

        ``raw_message`` is the transport handle of ``request``, settled once
        the outcome is known. Unexpected errors propagate and leave it unsettled.
        """
        result = None
        try:
            result = await self._engine.deliver_event(
                request.tenant,
                request.execution_id,
                request.event_name,
                request.payload,
                request.user_id,
                event_id=request.event_id,
                event_type=request.event_type,
            )
        except ExecutionClosedError as e:
            logger.warning(f"Dropping {request.event_name}: {e}")
        except ConflictError as e:
            if await self._retry(request, e, raw_message):
                return None
        except LedgerflowError as e:
            logger.error(
                f"Dropping {request.event_name} for execution {request.execution_id}: {e}"
            )
        if raw_message is not None:
            await self._transport.ack(raw_message)
        return result

    async def _retry(self, request: DeliveryRequest, error: Exception, raw_message: Any) -> bool:
        if request.attempt >= self.max_retries:
            logger.error(
                f"Giving up on {request.event_name} for execution {request.execution_id} "
                f"after {request.attempt + 1} attempts: {error}"
            )
            return False
        logger.info(
            f"Retrying {request.event_name} for execution {request.execution_id} "
            f"(attempt {request.attempt + 1}): {error}"
        )
        await retry.schedule_retry(request.attempt, base=self.backoff_base, cap=self.backoff_cap)
        await self._transport.requeue(self.topic, request, raw_message)
        return True
