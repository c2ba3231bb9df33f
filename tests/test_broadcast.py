import asyncio
import json
import threading

import redis

from lanequeue.broadcast import (
    BroadcastHub,
    Channel,
    ChannelClosed,
    RedisRelay,
    event_stream,
    format_sse,
    lanes_update_event,
    operation_event,
)
from lanequeue.models import QueueAction


def _drain(channel):
    events = []
    while True:
        event = channel.poll()
        if event is None:
            return events
        events.append(event)


def test_connect_preloads_initial_events():
    hub = BroadcastHub()
    channel = hub.connect([{"type": "connected"}, lanes_update_event([])])

    assert len(hub) == 1
    assert [e["type"] for e in _drain(channel)] == ["connected", "lanes_update"]


def test_broadcast_reaches_every_channel_in_order():
    hub = BroadcastHub()
    a = hub.connect()
    b = hub.connect()

    for n in range(5):
        hub.broadcast({"type": "operation", "n": n})

    assert [e["n"] for e in _drain(a)] == [0, 1, 2, 3, 4]
    assert [e["n"] for e in _drain(b)] == [0, 1, 2, 3, 4]


def test_closed_channel_is_dropped_on_next_write():
    hub = BroadcastHub()
    alive = hub.connect()
    dead = hub.connect()
    dead.close()

    hub.broadcast({"type": "operation"})

    assert len(hub) == 1
    assert len(_drain(alive)) == 1


def test_slow_channel_is_dropped_instead_of_blocking():
    hub = BroadcastHub(buffer_size=2)
    slow = hub.connect()
    fast = hub.connect()

    for n in range(3):
        hub.broadcast({"n": n})
        _drain(fast)

    assert slow.closed
    assert len(hub) == 1


def test_channel_send_after_close_raises():
    channel = Channel()
    channel.close()
    try:
        channel.send({})
    except ChannelClosed:
        pass
    else:
        raise AssertionError("expected ChannelClosed")


def test_close_all_clears_registry():
    hub = BroadcastHub()
    channels = [hub.connect() for _ in range(3)]

    hub.close_all()

    assert len(hub) == 0
    assert all(c.closed for c in channels)


def test_format_sse_frame():
    frame = format_sse(operation_event("ADVANCE", 3, {"currentNumber": 7}))

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame[len("data: "):])
    assert payload["type"] == "operation"
    assert payload["laneId"] == 3
    assert payload["result"] == {"currentNumber": 7}
    assert payload["timestamp"].endswith("Z")


def test_event_stream_drains_then_stops_on_disconnect():
    hub = BroadcastHub()
    channel = hub.connect([{"type": "connected"}, {"type": "lanes_update", "lanes": []}])

    async def disconnected():
        return True

    async def collect():
        return [frame async for frame in event_stream(hub, channel, disconnected, poll_interval=0.01)]

    frames = asyncio.run(collect())

    assert [json.loads(f[6:])["type"] for f in frames] == ["connected", "lanes_update"]
    assert len(hub) == 0
    assert channel.closed


def test_event_stream_sends_keep_alive_when_idle():
    hub = BroadcastHub()
    channel = hub.connect()
    polls = []

    async def disconnected():
        polls.append(1)
        return len(polls) > 3

    async def collect():
        return [
            frame
            async for frame in event_stream(
                hub, channel, disconnected, poll_interval=0.01, heartbeat_seconds=0.02
            )
        ]

    frames = asyncio.run(collect())

    assert ": keep-alive\n\n" in frames


class FakeRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    def publish(self, channel, data):
        if self.fail:
            raise redis.ConnectionError("redis is down")
        self.published.append((channel, data))


def test_relay_publishes_instead_of_local_delivery():
    hub = BroadcastHub()
    channel = hub.connect()
    client = FakeRedis()
    relay = RedisRelay(client, hub, "test:updates")
    hub.relay = relay

    hub.broadcast({"type": "operation", "laneId": 1})

    assert _drain(channel) == []
    assert client.published[0][0] == "test:updates"
    relay.handle_message({"type": "message", "data": client.published[0][1]})
    assert _drain(channel) == [{"type": "operation", "laneId": 1}]


def test_relay_failure_falls_back_to_local_delivery():
    hub = BroadcastHub()
    channel = hub.connect()
    hub.relay = RedisRelay(FakeRedis(fail=True), hub)

    hub.broadcast({"type": "operation"})

    assert _drain(channel) == [{"type": "operation"}]


def test_relay_ignores_subscribe_and_malformed_messages():
    hub = BroadcastHub()
    channel = hub.connect()
    relay = RedisRelay(FakeRedis(), hub)

    relay.handle_message(None)
    relay.handle_message({"type": "subscribe", "data": 1})
    relay.handle_message({"type": "message", "data": "{not json"})

    assert _drain(channel) == []


def test_open_channel_starts_with_current_snapshot(service, lane):
    service.reserve(lane.id)

    channel = service.open_channel()

    connected, snapshot = _drain(channel)
    assert connected["type"] == "connected"
    assert snapshot["type"] == "lanes_update"
    assert [(s["name"], s["waitingCount"]) for s in snapshot["lanes"]] == [("Billing", 1)]


def test_operations_reach_open_channels(service, lane, cashier):
    lane_id, cashier_id = lane.id, cashier.id
    service.reserve(lane_id)
    channel = service.open_channel()
    _drain(channel)

    service.operate(QueueAction.advance, lane_id, cashier_id)

    operation, snapshot = _drain(channel)
    assert operation["type"] == "operation"
    assert operation["action"] == "ADVANCE"
    assert operation["result"] == {"currentNumber": 1}
    assert snapshot["lanes"][0]["currentNumber"] == 1
    assert snapshot["lanes"][0]["calledCount"] == 1


def test_update_committed_while_channel_opens_is_not_lost(service, lane, monkeypatch):
    lane_id = lane.id
    service.reserve(lane_id)
    real_statuses = service._lane_statuses
    real_publish = service.publish_lanes
    committed = threading.Event()
    racers = []

    def publish_after_commit():
        committed.set()
        real_publish()

    def statuses_then_race(session):
        snapshot = real_statuses(session)
        if not racers:
            # Another customer takes a number after this snapshot was read.
            racer = threading.Thread(target=service.reserve, args=(lane_id,))
            racers.append(racer)
            racer.start()
            assert committed.wait(timeout=10)
        return snapshot

    monkeypatch.setattr(service, "publish_lanes", publish_after_commit)
    monkeypatch.setattr(service, "_lane_statuses", statuses_then_race)

    channel = service.open_channel()
    racers[0].join(timeout=10)

    updates = [e for e in _drain(channel) if e["type"] == "lanes_update"]
    assert [u["lanes"][0]["waitingCount"] for u in updates] == [1, 2]
    assert service.lane_statuses()[0]["waitingCount"] == 2
