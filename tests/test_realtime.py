import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.websockets import WebSocketDisconnect

from tvbooking.realtime import (
    ChangePublisher,
    SubscriptionManager,
    build_row_filter,
    channel_for,
    coalesce,
)


def event(record_id, status="pending", worker_id="w1", change="UPDATE"):
    return json.dumps({"table": "bookings", "type": change, "record": {"id": record_id, "status": status, "worker_id": worker_id}})


class FakePubSub:
    def __init__(self, messages=None):
        self.channels = []
        self.messages = list(messages or [])
        self.closed = False

    async def subscribe(self, channel):
        self.channels.append(channel)

    async def unsubscribe(self):
        self.channels = []

    async def get_message(self, ignore_subscribe_messages=True, timeout=1.0):
        await asyncio.sleep(0)
        if self.messages:
            return {"type": "message", "data": self.messages.pop(0)}
        return None

    async def aclose(self):
        self.closed = True


class FakeRedis:
    def __init__(self, messages=None):
        self.pubsub_instance = FakePubSub(messages)
        self.published = []
        self.closed = False

    def pubsub(self):
        return self.pubsub_instance

    async def publish(self, channel, payload):
        self.published.append((channel, json.loads(payload)))
        return 1

    async def aclose(self):
        self.closed = True


class Batches:
    def __init__(self):
        self.batches = []

    async def __call__(self, batch):
        self.batches.append(batch)


@pytest.fixture
def delays():
    return []


@pytest.fixture
def fake_sleep(delays):
    async def _sleep(seconds):
        delays.append(seconds)
        await asyncio.sleep(0)

    return _sleep


# --------------------------------------------------------------------
# Helpers
# --------------------------------------------------------------------
def test_channel_names():
    assert channel_for("bookings") == "changes:bookings"


def test_coalesce_keeps_latest_per_record():
    events = [json.loads(event("a", "pending")), json.loads(event("b")), json.loads(event("a", "confirmed"))]
    merged = coalesce(events)
    assert [e["record"]["id"] for e in merged] == ["a", "b"]
    assert merged[0]["record"]["status"] == "confirmed"


def test_row_filter():
    assert build_row_filter({}) is None
    matches = build_row_filter({"worker_id": "w1"})
    assert matches({"worker_id": "w1"})
    assert not matches({"worker_id": "w2"})


# --------------------------------------------------------------------
# SubscriptionManager
# --------------------------------------------------------------------
async def test_messages_are_filtered_and_batched():
    consumer = Batches()
    manager = SubscriptionManager(
        "bookings", consumer, redis_factory=FakeRedis, row_filter=build_row_filter({"worker_id": "w1"})
    )

    assert manager.handle_message(event("a"))
    assert not manager.handle_message(event("b", worker_id="w2"))
    assert not manager.handle_message("{not json")
    assert manager.handle_message(event("a", "confirmed"))

    assert await manager.flush() == 1
    assert consumer.batches[0][0]["record"]["status"] == "confirmed"
    assert await manager.flush() == 0


async def test_listener_delivers_batches_until_disposed(fake_sleep):
    client = FakeRedis(messages=[event("a"), event("b"), event("a", "confirmed")])
    consumer = Batches()
    manager = SubscriptionManager("bookings", consumer, redis_factory=lambda: client, sleep=fake_sleep)

    await manager.connect()
    assert manager.state == "connected"
    assert client.pubsub_instance.channels == ["changes:bookings"]
    for _ in range(20):
        await asyncio.sleep(0)

    await manager.dispose()
    assert manager.state == "disposed"
    delivered = [e["record"]["id"] for batch in consumer.batches for e in batch]
    assert set(delivered) == {"a", "b"}
    assert client.pubsub_instance.closed
    assert client.closed


async def test_reconnect_backs_off_then_fails(delays, fake_sleep):
    def broken():
        raise OSError("connection refused")

    manager = SubscriptionManager(
        "bookings", Batches(), redis_factory=broken, max_reconnect_attempts=3, sleep=fake_sleep
    )
    assert not await manager.reconnect()
    assert delays == [1.0, 2.0, 4.0]
    assert manager.state == "failed"
    assert manager.reconnect_count == 0


async def test_reconnect_recovers(delays, fake_sleep):
    attempts = []
    client = FakeRedis()

    def flaky():
        attempts.append(1)
        if len(attempts) < 2:
            raise RedisConnectionError("down")
        return client

    manager = SubscriptionManager("bookings", Batches(), redis_factory=flaky, sleep=fake_sleep)
    assert await manager.reconnect()
    assert delays == [1.0, 2.0]
    assert manager.state == "connected"
    assert manager.reconnect_count == 1
    assert client.pubsub_instance.channels == ["changes:bookings"]


# --------------------------------------------------------------------
# ChangePublisher
# --------------------------------------------------------------------
async def test_publisher_sends_json_events():
    client = FakeRedis()
    publisher = ChangePublisher(lambda: client)

    assert await publisher.publish("bookings", "UPDATE", {"id": "a", "status": "confirmed"})
    assert client.published == [
        ("changes:bookings", {"table": "bookings", "type": "UPDATE", "record": {"id": "a", "status": "confirmed"}})
    ]
    await publisher.close()
    assert client.closed


async def test_publisher_without_redis_is_a_no_op():
    publisher = ChangePublisher()
    assert not publisher.is_available()
    assert not await publisher.publish("bookings", "INSERT", {"id": "a"})


async def test_publisher_swallows_redis_errors_and_reconnects():
    clients = []

    class Failing(FakeRedis):
        async def publish(self, channel, payload):
            raise RedisConnectionError("gone")

    def factory():
        clients.append(Failing() if not clients else FakeRedis())
        return clients[-1]

    publisher = ChangePublisher(factory)
    assert not await publisher.publish("bookings", "UPDATE", {"id": "a"})
    assert await publisher.publish("bookings", "UPDATE", {"id": "a"})
    assert len(clients) == 2


# --------------------------------------------------------------------
# Websocket endpoint
# --------------------------------------------------------------------
@pytest.mark.parametrize("path, code", [("/ws/transactions", 1008), ("/ws/bookings", 1013)])
def test_websocket_rejections(client, path, code):
    # the test container runs without redis
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(path):
            pass
    assert exc.value.code == code
