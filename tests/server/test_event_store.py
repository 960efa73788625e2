import pytest

from mcpwire.server.event_store import EventMessage, InMemoryEventStore
from mcpwire.types import JSONRPCMessage, JSONRPCNotification, JSONRPCResponse


def _notification(n: int) -> JSONRPCMessage:
    return JSONRPCMessage(JSONRPCNotification(jsonrpc="2.0", method="notifications/message", params={"n": n}))


@pytest.mark.anyio
async def test_replay_after_event_in_order():
    store = InMemoryEventStore()
    ids = [await store.store_event("stream-a", _notification(n)) for n in range(4)]
    await store.store_event("stream-b", _notification(99))

    replayed: list[EventMessage] = []

    async def collect(event: EventMessage) -> None:
        replayed.append(event)

    stream_id = await store.replay_events_after(ids[1], collect)

    assert stream_id == "stream-a"
    assert [event.event_id for event in replayed] == ids[2:]
    assert [event.message for event in replayed] == [_notification(2), _notification(3)]


@pytest.mark.anyio
async def test_event_ids_are_unique():
    store = InMemoryEventStore()
    response = JSONRPCMessage(JSONRPCResponse(jsonrpc="2.0", id=1, result={}))
    ids = {await store.store_event("s", response) for _ in range(20)}
    assert len(ids) == 20


@pytest.mark.anyio
async def test_unknown_event_id_replays_nothing():
    store = InMemoryEventStore()
    await store.store_event("s", _notification(1))
    replayed: list[EventMessage] = []

    async def collect(event: EventMessage) -> None:
        replayed.append(event)

    assert await store.replay_events_after("missing", collect) is None
    assert replayed == []


@pytest.mark.anyio
async def test_oldest_events_are_evicted():
    store = InMemoryEventStore(max_events_per_stream=2)
    first = await store.store_event("s", _notification(1))
    second = await store.store_event("s", _notification(2))
    await store.store_event("s", _notification(3))

    replayed: list[EventMessage] = []

    async def collect(event: EventMessage) -> None:
        replayed.append(event)

    assert await store.replay_events_after(first, collect) is None
    assert await store.replay_events_after(second, collect) == "s"
    assert [event.message for event in replayed] == [_notification(3)]
    assert len(store.streams["s"]) == 2
