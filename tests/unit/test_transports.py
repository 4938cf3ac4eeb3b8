"""Transport tests."""

import asyncio

import pytest

from ledgerflow.contracts import DeliveryRequest
from ledgerflow.transports.inmemory import InMemoryTransport
from ledgerflow.transports.redis import RedisTransport
from ledgerflow.utils.retry import compute_backoff


def _request(**overrides):
    data = {
        "tenant": "acme",
        "execution_id": "e1",
        "event_name": "Submit",
        "payload": {"amount": 10},
    }
    data.update(overrides)
    return DeliveryRequest(**data)


class FakeRedis:
    """The list commands RedisTransport uses, on plain Python lists."""

    def __init__(self):
        self.lists = {}

    def _pop(self, name, side):
        items = self.lists.get(name)
        if not items:
            return None
        return items.pop(0) if side == "LEFT" else items.pop()

    def _push(self, name, side, value):
        items = self.lists.setdefault(name, [])
        if side == "LEFT":
            items.insert(0, value)
        else:
            items.append(value)

    async def ping(self):
        return True

    async def aclose(self):
        pass

    async def lpush(self, name, value):
        self._push(name, "LEFT", value)

    async def lmove(self, first, second, src="LEFT", dest="RIGHT"):
        value = self._pop(first, src)
        if value is not None:
            self._push(second, dest, value)
        return value

    async def blmove(self, first, second, timeout, src="LEFT", dest="RIGHT"):
        value = await self.lmove(first, second, src=src, dest=dest)
        if value is None:
            await asyncio.sleep(0.01)
        return value

    async def lrem(self, name, count, value):
        items = self.lists.get(name, [])
        if value in items:
            items.remove(value)
            return 1
        return 0


def _redis_transport(fake, consumer="w1"):
    transport = RedisTransport(consumer=consumer)
    transport._redis = fake
    return transport


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    transport = InMemoryTransport()
    message = _request()
    await transport.publish("events", message)
    assert transport.pending("events") == 1

    message_received = False
    async for raw_msg, received in transport.subscribe("events"):
        assert received.event_name == "Submit"
        assert received.payload["amount"] == 10
        assert received.event_id == message.event_id
        assert transport.unacked("events") == 1
        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.acked == [message.message_id]
    assert transport.pending("events") == 0
    assert transport.unacked("events") == 0


@pytest.mark.asyncio
async def test_inmemory_subscribe_stops_after_lifespan():
    transport = InMemoryTransport(poll_interval=0.01)
    received = [msg async for _, msg in transport.subscribe("idle", lifespan=0.05)]
    assert received == []


@pytest.mark.asyncio
async def test_inmemory_recover_restores_order():
    transport = InMemoryTransport(poll_interval=0.01)
    first, second, third = _request(), _request(), _request()
    for message in (first, second, third):
        await transport.publish("events", message)

    taken = []
    async for _, received in transport.subscribe("events"):
        taken.append(received.message_id)
        if len(taken) == 2:
            break
    assert await transport.recover("events") == 2

    order = [m.message_id async for _, m in transport.subscribe("events", lifespan=0.05)]
    assert order == [first.message_id, second.message_id, third.message_id]


@pytest.mark.asyncio
async def test_requeue_publishes_next_attempt_then_acks():
    transport = InMemoryTransport()
    await transport.publish("events", _request())
    async for raw, received in transport.subscribe("events"):
        break

    retry = await transport.requeue("events", received, raw)
    assert retry.attempt == received.attempt + 1
    assert retry.event_id == received.event_id
    assert transport.acked == [received.message_id]
    assert transport.pending("events") == 1
    assert transport.unacked("events") == 0


def test_delivery_request_round_trip_and_bump():
    message = _request(user_id="alice")
    assert DeliveryRequest.from_json(message.to_json()) == message

    bumped = message.bump_attempt()
    assert bumped.attempt == message.attempt + 1
    assert bumped.message_id != message.message_id
    assert bumped.event_id == message.event_id


def test_compute_backoff_growth_and_cap():
    first = compute_backoff(1, base=1, jitter=0)
    second = compute_backoff(2, base=1, jitter=0)
    assert second > first
    assert compute_backoff(10, base=1, cap=5, jitter=0) == 5


def test_redis_transport_defaults():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379
    assert transport._queue("events") == "ledgerflow:events"
    assert transport._processing("events") == "ledgerflow:events:processing:default"


@pytest.mark.asyncio
async def test_redis_messages_stay_in_processing_until_acked():
    fake = FakeRedis()
    transport = _redis_transport(fake)
    message = _request()
    await transport.publish("events", message)

    async for raw, received in transport.subscribe("events", lifespan=1):
        break
    assert received.event_id == message.event_id
    assert fake.lists["ledgerflow:events"] == []
    assert len(fake.lists["ledgerflow:events:processing:w1"]) == 1

    await transport.ack(raw)
    assert fake.lists["ledgerflow:events:processing:w1"] == []


@pytest.mark.asyncio
async def test_redis_restarted_consumer_recovers_unacked_messages():
    fake = FakeRedis()
    crashed = _redis_transport(fake)
    first, second = _request(), _request()
    await crashed.publish("events", first)
    await crashed.publish("events", second)
    async for _, received in crashed.subscribe("events", lifespan=1):
        break
    assert received.message_id == first.message_id

    # Another consumer's processing list is left alone.
    other = _redis_transport(fake, consumer="w2")
    assert await other.recover("events") == 0

    restarted = _redis_transport(fake)
    order = []
    async for raw, received in restarted.subscribe("events", lifespan=1):
        order.append(received.message_id)
        await restarted.ack(raw)
        if len(order) == 2:
            break
    assert order == [first.message_id, second.message_id]
    assert fake.lists["ledgerflow:events:processing:w1"] == []


@pytest.mark.asyncio
async def test_redis_drops_malformed_messages():
    fake = FakeRedis()
    transport = _redis_transport(fake)
    await fake.lpush("ledgerflow:events", '{"tenant": "acme"}')
    await transport.publish("events", _request())

    async for raw, received in transport.subscribe("events", lifespan=1):
        break
    assert received.event_name == "Submit"
    await transport.ack(raw)
    assert fake.lists["ledgerflow:events:processing:w1"] == []
