"""Delivery transports between event producers and delivery workers."""

from __future__ import annotations

from typing import Optional

from ..config import LedgerflowConfig, load_config
from .base import DeliveryTransport
from .inmemory import InMemoryTransport


def get_transport(config: Optional[LedgerflowConfig] = None) -> DeliveryTransport:
    """Build the transport named by ``transport.backend``.

    ``LEDGERFLOW_TRANSPORT`` overrides the backend through ``load_config``.
    """
    settings = (config or load_config()).transport
    if settings.backend == "inmemory":
        return InMemoryTransport()

    from .redis import RedisTransport

    redis_conf = settings.redis
    return RedisTransport(
        host=redis_conf.host,
        port=redis_conf.port,
        db=redis_conf.db,
        password=redis_conf.password,
        prefix=redis_conf.prefix,
        consumer=redis_conf.consumer,
    )


__all__ = ["DeliveryTransport", "InMemoryTransport", "get_transport"]
