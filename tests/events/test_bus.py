"""Tests for the event bus."""

import pytest

from wharf.events.bus import LOG_TOPIC, PORT_TOPIC, STATUS_TOPIC, Event, EventBus


@pytest.mark.asyncio
async def test_emit_and_subscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe(STATUS_TOPIC, handler)
    await bus.emit(STATUS_TOPIC, {"workload_id": "w1", "status": "running"})

    assert len(received) == 1
    assert received[0].topic == "workload.status"
    assert received[0].data["workload_id"] == "w1"


@pytest.mark.asyncio
async def test_wildcard_subscribe_gets_all_workload_streams():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("workload.*", handler)
    await bus.emit(LOG_TOPIC, {"workload_id": "w1"})
    await bus.emit(STATUS_TOPIC, {"workload_id": "w1"})
    await bus.emit(PORT_TOPIC, {"workload_id": "w1"})
    await bus.emit("system.tick")  # should NOT match

    assert [e.topic for e in received] == [LOG_TOPIC, STATUS_TOPIC, PORT_TOPIC]


@pytest.mark.asyncio
async def test_unsubscribe():
    bus = EventBus()
    received = []

    async def handler(event: Event):
        received.append(event)

    bus.subscribe("test", handler)
    await bus.emit("test")
    assert len(received) == 1

    bus.unsubscribe("test", handler)
    await bus.emit("test")
    assert len(received) == 1  # no new events


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    bus = EventBus()
    received = []

    async def broken(event: Event):
        raise RuntimeError("subscriber bug")

    async def healthy(event: Event):
        received.append(event)

    bus.subscribe(LOG_TOPIC, broken)
    bus.subscribe(LOG_TOPIC, healthy)
    await bus.emit(LOG_TOPIC, {"message": "one"})
    await bus.emit(LOG_TOPIC, {"message": "two"})

    assert [e.data["message"] for e in received] == ["one", "two"]


@pytest.mark.asyncio
async def test_history_newest_first_and_filtered():
    bus = EventBus()
    await bus.emit("workload.log", {"x": 1})
    await bus.emit("workload.port", {"x": 2})
    await bus.emit("system.boot", {"x": 3})

    all_events = bus.history()
    assert [e.data["x"] for e in all_events] == [3, 2, 1]

    workload_events = bus.history(topic_filter="workload.*")
    assert len(workload_events) == 2


@pytest.mark.asyncio
async def test_history_limit():
    bus = EventBus(history_limit=5)
    for i in range(10):
        await bus.emit("test", {"i": i})

    assert len(bus.history()) == 5
    assert bus.history()[0].data["i"] == 9


@pytest.mark.asyncio
async def test_emit_returns_event():
    bus = EventBus()
    event = await bus.emit("test.topic", {"key": "value"}, source="orchestrator")

    assert event.topic == "test.topic"
    assert event.data["key"] == "value"
    assert event.source == "orchestrator"
    assert event.id


def test_subscriber_count():
    bus = EventBus()
    assert bus.subscriber_count == 0

    async def h(e):
        pass

    bus.subscribe("a", h)
    bus.subscribe("b", h)
    assert bus.subscriber_count == 2


@pytest.mark.asyncio
async def test_ws_receives_events():
    bus = EventBus()
    ws_received = []

    async def fake_ws(event: Event):
        ws_received.append(event)

    bus.add_ws_connection(fake_ws)
    assert bus.ws_connection_count == 1
    await bus.emit("test.ws", {"hello": "world"})

    assert len(ws_received) == 1
    assert ws_received[0].topic == "test.ws"

    bus.remove_ws_connection(fake_ws)
    assert bus.ws_connection_count == 0


@pytest.mark.asyncio
async def test_history_by_workload():
    bus = EventBus()
    await bus.emit("workload.log", {"workload_id": "a", "message": "one"})
    await bus.emit("workload.log", {"workload_id": "b", "message": "two"})
    await bus.emit("workload.status", {"workload_id": "a", "status": "running"})

    events = bus.history(workload_id="a")

    assert [e.topic for e in events] == ["workload.status", "workload.log"]
    assert bus.history(topic_filter="workload.log", workload_id="a")[0].data["message"] == "one"
