import asyncio
import json

import pytest

from navpulse.services.broadcaster import MARKET_ROOM, Broadcaster, user_room


class RecordingSocket:
    def __init__(self, fail_with=None):
        self.messages = []
        self.fail_with = fail_with

    async def send_json(self, message):
        if self.fail_with is not None:
            raise self.fail_with
        self.messages.append(message)


async def wait_for_messages(socket, count, timeout=2.0):
    async def poll():
        while len(socket.messages) < count:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_emit_reaches_room_members():
    broadcaster = Broadcaster()
    alice, bob = RecordingSocket(), RecordingSocket()
    await broadcaster.connect(alice, {"sub": "alice"})
    await broadcaster.connect(bob, {"sub": "bob"})

    assert await broadcaster.emit("market:update", {"x": 1}) == 2
    assert await broadcaster.emit("alert", {"y": 2}, room=user_room("alice")) == 1

    assert alice.messages == [
        {"event": "market:update", "data": {"x": 1}},
        {"event": "alert", "data": {"y": 2}},
    ]
    assert bob.messages == [{"event": "market:update", "data": {"x": 1}}]


@pytest.mark.asyncio
async def test_failed_send_drops_subscriber():
    broadcaster = Broadcaster()
    dead = RecordingSocket(fail_with=RuntimeError("socket closed"))
    live = RecordingSocket()
    await broadcaster.connect(dead, {"sub": "dead"})
    await broadcaster.connect(live, {"sub": "live"})

    assert await broadcaster.emit("market:update", {}) == 1
    assert broadcaster.subscriber_count() == 1
    assert broadcaster.subscriber_count(user_room("dead")) == 0


@pytest.mark.asyncio
async def test_disconnect_leaves_every_room():
    broadcaster = Broadcaster()
    socket = RecordingSocket()
    await broadcaster.connect(socket, {"sub": "u1"})
    broadcaster.disconnect(socket)

    assert broadcaster.subscriber_count(MARKET_ROOM) == 0
    assert await broadcaster.emit("market:update", {}) == 0


@pytest.mark.asyncio
async def test_relay_ignores_own_and_malformed_messages():
    broadcaster = Broadcaster(instance_id="me")
    socket = RecordingSocket()
    await broadcaster.connect(socket, {"sub": "u1"})

    own = json.dumps({"origin": "me", "event": "e", "room": MARKET_ROOM, "data": 1})
    other = json.dumps({"origin": "peer", "event": "e", "room": MARKET_ROOM, "data": 2})

    assert await broadcaster._handle_relay_message(own) == 0
    assert await broadcaster._handle_relay_message("not json") == 0
    assert await broadcaster._handle_relay_message(json.dumps({"origin": "peer"})) == 0
    assert await broadcaster._handle_relay_message(other.encode()) == 1
    assert socket.messages == [{"event": "e", "data": 2}]


@pytest.mark.asyncio
async def test_publish_reaches_other_instances_once(redis):
    first = Broadcaster(redis, channel="test:broadcast")
    second = Broadcaster(redis, channel="test:broadcast")
    on_first, on_second = RecordingSocket(), RecordingSocket()
    await first.connect(on_first, {"sub": "a"})
    await second.connect(on_second, {"sub": "b"})

    first.start_relay()
    second.start_relay()
    try:
        # Let both relays subscribe before publishing
        for _ in range(100):
            if (await redis.pubsub_numsub("test:broadcast"))[0][1] == 2:
                break
            await asyncio.sleep(0.01)

        assert await first.publish("market:update", {"value": 22100.0}) == 1
        await wait_for_messages(on_second, 1)
        await asyncio.sleep(0.05)
    finally:
        await first.stop_relay()
        await second.stop_relay()

    assert on_first.messages == [{"event": "market:update", "data": {"value": 22100.0}}]
    assert on_second.messages == [{"event": "market:update", "data": {"value": 22100.0}}]


@pytest.mark.asyncio
async def test_publish_without_relay_store(redis, redis_server):
    broadcaster = Broadcaster(redis)
    socket = RecordingSocket()
    await broadcaster.connect(socket, {"sub": "u1"})
    redis_server.connected = False

    assert await broadcaster.publish("market:update", {}) == 1
    assert len(socket.messages) == 1
