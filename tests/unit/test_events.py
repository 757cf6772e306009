import pytest

from mailflow.contracts import TriggerEvent
from mailflow.errors import ValidationError
from mailflow.events import InMemoryEventTransport, get_transport
from mailflow.events.redis import RedisEventTransport
from mailflow.scheduler import EventListener


def test_event_json_roundtrip():
    event = TriggerEvent(event_type="purchase", subscriber_id="a@x.com", payload={"sku": "A1"})
    assert TriggerEvent.from_json(event.to_json()) == event


@pytest.mark.asyncio
async def test_inmemory_transport_delivers_in_order():
    transport = InMemoryEventTransport(poll_interval=0.01)
    first = TriggerEvent(event_type="welcome", subscriber_id="a@x.com")
    second = TriggerEvent(event_type="welcome", subscriber_id="b@x.com")
    await transport.publish("events", first)
    await transport.publish("events", second)

    received = []
    async for raw, event in transport.subscribe("events", lifespan=0.1):
        received.append(event.subscriber_id)
        await transport.ack(raw)

    assert received == ["a@x.com", "b@x.com"]
    assert transport.acked == [first.event_id, second.event_id]
    assert transport.pending("events") == 0


@pytest.mark.asyncio
async def test_listener_acks_rejected_and_failed_events():
    transport = InMemoryEventTransport(poll_interval=0.01)
    for subscriber in ("ok@x.com", "rejected@x.com", "broken@x.com"):
        await transport.publish(
            "events", TriggerEvent(event_type="welcome", subscriber_id=subscriber)
        )

    handled = []

    async def handler(event):
        if event.subscriber_id == "rejected@x.com":
            raise ValidationError("conditions not met")
        if event.subscriber_id == "broken@x.com":
            raise RuntimeError("boom")
        handled.append(event.subscriber_id)

    listener = EventListener(transport, handler)
    count = await listener.run(lifespan=0.1)

    assert count == 3
    assert handled == ["ok@x.com"]
    assert len(transport.acked) == 3


def test_redis_queue_name_is_prefixed():
    transport = RedisEventTransport(host="h")
    assert transport.queue_name("events") == "mailflow:events"


def test_get_transport_inmemory_backend(monkeypatch, tmp_path):
    monkeypatch.setenv("MAILFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("MAILFLOW_EVENTS", raising=False)
    assert isinstance(get_transport(), InMemoryEventTransport)
    assert isinstance(get_transport("redis"), RedisEventTransport)
