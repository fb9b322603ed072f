import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from unihub.cache import MemoryKeyValueStore, RedisKeyValueStore, declined_key, notified_key, ping
from unihub.errors import BackendUnavailableError
from unihub.realtime import INSERT, UPDATE, ChangeEvent, InMemoryRealtime, RedisRealtime


class FakePubSub:
    def __init__(self, redis):
        self.redis = redis
        self.queue = asyncio.Queue()
        self.patterns = []
        self.closed = False

    async def psubscribe(self, pattern):
        self.patterns.append(pattern)
        self.redis.subscribers.append(self)

    async def get_message(self, ignore_subscribe_messages=True, timeout=1.0):
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    async def punsubscribe(self):
        self.patterns = []

    async def aclose(self):
        self.closed = True


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.published = []
        self.subscribers = []

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value):
        self.values[key] = value.encode()

    async def ping(self):
        return True

    def pubsub(self):
        return FakePubSub(self)

    async def publish(self, channel, data):
        self.published.append((channel, data))
        for sub in self.subscribers:
            sub.queue.put_nowait({"type": "pmessage", "channel": channel.encode(), "data": data.encode()})
        return len(self.subscribers)


class BrokenRedis:
    async def ping(self):
        raise ConnectionError("redis down")


def test_cache_keys():
    assert declined_key("ride", "d1") == "declined_ride_orders_d1"
    assert notified_key("delivery", "d1") == "processed_delivery_orders_d1"
    assert notified_key("ride", None) == "processed_ride_orders_anonymous"


@pytest.mark.parametrize("make_store", [MemoryKeyValueStore, lambda: RedisKeyValueStore(FakeRedis())])
def test_key_value_store_round_trip(make_store):
    async def scenario():
        store = make_store()
        assert await store.get_ids("k") == []
        await store.set_ids("k", ["a", "b"])
        assert await store.get_ids("k") == ["a", "b"]

    asyncio.run(scenario())


def test_corrupt_cache_value_reads_as_empty():
    async def scenario():
        redis = FakeRedis()
        redis.values["k"] = b"{not json"
        redis.values["obj"] = b'{"a": 1}'
        store = RedisKeyValueStore(redis)
        assert await store.get_ids("k") == []
        assert await store.get_ids("obj") == []

    asyncio.run(scenario())


def test_ping():
    assert asyncio.run(ping(FakeRedis())) is True
    assert asyncio.run(ping(BrokenRedis())) is False


def test_change_event_json():
    event = ChangeEvent(table="orders", type=UPDATE, new={"id": "o1", "status": "pending"}, old={"status": "accepted"})
    assert ChangeEvent.from_json(event.to_json()) == event


def test_channel_filters_table_event_and_row():
    async def scenario():
        hub = InMemoryRealtime()
        seen = []

        async def handler(event):
            seen.append(event.new["id"])

        await hub.subscribe(hub.channel("c").on("orders", handler, events=INSERT, row_filter={"service_type": "unisend"}))
        await hub.publish(ChangeEvent("orders", INSERT, {"id": "1", "service_type": "unisend"}))
        await hub.publish(ChangeEvent("orders", INSERT, {"id": "2", "service_type": "unimove"}))
        await hub.publish(ChangeEvent("orders", UPDATE, {"id": "3", "service_type": "unisend"}))
        await hub.publish(ChangeEvent("ride_requests", INSERT, {"id": "4", "service_type": "unisend"}))
        return seen

    assert asyncio.run(scenario()) == ["1"]


def test_failing_handler_does_not_block_other_channels():
    async def scenario():
        hub = InMemoryRealtime()
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def handler(event):
            seen.append(event.new["id"])

        await hub.subscribe(hub.channel("broken").on("orders", broken))
        await hub.subscribe(hub.channel("ok").on("orders", handler))
        await hub.publish(ChangeEvent("orders", INSERT, {"id": "1"}))
        return seen

    assert asyncio.run(scenario()) == ["1"]


def test_removed_channel_receives_nothing():
    async def scenario():
        hub = InMemoryRealtime()
        seen = []

        async def handler(event):
            seen.append(event)

        channel = await hub.subscribe(hub.channel("c").on("orders", handler))
        await hub.remove_channel(channel)
        await hub.publish(ChangeEvent("orders", INSERT, {"id": "1"}))
        assert hub.active_channels() == []
        return seen

    assert asyncio.run(scenario()) == []


def test_redis_realtime_fans_out_through_pubsub():
    async def scenario():
        redis = FakeRedis()
        hub = RedisRealtime(redis)
        received = asyncio.Queue()

        async def handler(event):
            await received.put(event)

        await hub.subscribe(hub.channel("c").on("orders", handler, row_filter={"id": "o1"}))
        await hub.publish(ChangeEvent("orders", INSERT, {"id": "o2"}))
        await hub.publish(ChangeEvent("orders", INSERT, {"id": "o1", "status": "pending"}))
        event = await asyncio.wait_for(received.get(), 2.0)
        assert event.new == {"id": "o1", "status": "pending"}
        assert received.empty()
        assert [c for c, _ in redis.published] == ["realtime:orders", "realtime:orders"]

        pubsub = redis.subscribers[0]
        await hub.close()
        assert pubsub.closed
        assert hub.active_channels() == []

    asyncio.run(scenario())


class DownRedis:
    async def get(self, key):
        raise RedisConnectionError("connection refused")

    async def set(self, key, value):
        raise RedisConnectionError("connection refused")


def test_redis_failure_surfaces_as_backend_unavailable():
    store = RedisKeyValueStore(DownRedis())
    with pytest.raises(BackendUnavailableError) as exc:
        asyncio.run(store.get_ids("k"))
    assert exc.value.retryable
    with pytest.raises(BackendUnavailableError):
        asyncio.run(store.set_ids("k", ["a"]))
