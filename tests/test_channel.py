"""Tests for the invalidation channel."""

import asyncio
from datetime import date, datetime, timezone

import pytest
import redis.asyncio as redis
from redis.exceptions import ResponseError

from src.coordination import (
    InMemoryInvalidationChannel,
    LockBackendError,
    LockEvent,
    RedisInvalidationChannel,
)
from src.coordination.channel import channel_name
from src.coordination.models import EventType


def make_event(module_key: str = "daily_report") -> LockEvent:
    return LockEvent(
        module_key=module_key,
        module_date=date(2024, 1, 1),
        type=EventType.ACQUIRED,
        actor="alice",
        at=datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc),
    )


class TestInMemoryChannel:
    """Test in-process fan-out."""

    @pytest.mark.asyncio
    async def test_events_are_scoped_by_module(self):
        """Subscribers only hear about their module."""
        channel = InMemoryInvalidationChannel()
        daily, staff = [], []

        async def on_daily(event):
            daily.append(event)

        async def on_staff(event):
            staff.append(event)

        await channel.subscribe("daily_report", on_daily)
        await channel.subscribe("staff_report", on_staff)
        await channel.publish(make_event("daily_report"))

        assert len(daily) == 1
        assert staff == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self):
        """One broken subscriber does not stop delivery."""
        channel = InMemoryInvalidationChannel()
        seen = []

        async def broken(event):
            raise RuntimeError("boom")

        async def working(event):
            seen.append(event)

        await channel.subscribe("daily_report", broken)
        await channel.subscribe("daily_report", working)
        await channel.publish(make_event())

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_reset_sends_resync(self):
        """Reconnects are delivered as None."""
        channel = InMemoryInvalidationChannel()
        seen = []

        async def handler(event):
            seen.append(event)

        subscription = await channel.subscribe("daily_report", handler)
        await channel.reset_connections()
        await subscription.close()
        await channel.reset_connections()

        assert seen == [None]


class TestRedisChannel:
    """Test the Redis pub/sub channel."""

    def test_channel_name(self):
        """Channels are keyed by module."""
        assert channel_name("daily_report") == "module_lock:daily_report"

    @pytest.mark.asyncio
    async def test_publish_without_redis_raises(self):
        """Publishing to an unreachable server is a backend error."""
        channel = RedisInvalidationChannel("redis://127.0.0.1:1")

        with pytest.raises(LockBackendError):
            await channel.publish(make_event())

        await channel.close()

    @pytest.mark.asyncio
    async def test_subscribe_without_redis_raises(self):
        """A feed that cannot subscribe says so instead of dying quietly."""
        channel = RedisInvalidationChannel("redis://127.0.0.1:1")

        async def handler(event):
            pass

        with pytest.raises(LockBackendError):
            await channel.subscribe("daily_report", handler)

        await channel.close()

    @pytest.mark.asyncio
    async def test_any_redis_error_reconnects_and_resyncs(self):
        """Errors other than dropped connections also resubscribe and resync."""
        channel = RedisInvalidationChannel("redis://unused", reconnect_delay=0)
        channel.redis = FlakyRedis()
        resynced = asyncio.Event()

        async def handler(event):
            if event is None:
                resynced.set()

        subscription = await channel.subscribe("daily_report", handler)
        await asyncio.wait_for(resynced.wait(), timeout=1)

        assert channel.redis.subscribed == ["module_lock:daily_report"] * 2
        await subscription.close()
        await channel.close()


class FlakyPubSub:
    """Pub/sub whose first listen fails with a protocol error."""

    def __init__(self, owner: "FlakyRedis", fail: bool):
        self.owner = owner
        self.fail = fail

    async def subscribe(self, name):
        self.owner.subscribed.append(name)

    async def listen(self):
        if self.fail:
            raise ResponseError("unexpected reply")
        await asyncio.Event().wait()
        yield

    async def aclose(self):
        pass


class FlakyRedis:
    def __init__(self):
        self.subscribed = []
        self.pubsubs = [FlakyPubSub(self, fail=True), FlakyPubSub(self, fail=False)]

    def pubsub(self):
        return self.pubsubs.pop(0)

    async def aclose(self):
        pass


class TestRedisChannelLive:
    """Test the Redis channel against a live server."""

    @pytest.mark.asyncio
    async def test_events_are_delivered(self, redis_url):
        """Published events reach subscribers of the same module."""
        channel = RedisInvalidationChannel(redis_url)
        received = asyncio.Queue()

        async def handler(event):
            await received.put(event)

        subscription = await channel.subscribe("daily_report", handler)
        await channel.publish(make_event())

        event = await asyncio.wait_for(received.get(), timeout=5)
        assert event.actor == "alice"
        await subscription.close()
        await channel.close()

    @pytest.mark.asyncio
    async def test_dropped_connection_resyncs(self, redis_url):
        """A killed pub/sub connection is re-established and sends a resync."""
        channel = RedisInvalidationChannel(redis_url, reconnect_delay=0.05)
        received = asyncio.Queue()

        async def handler(event):
            await received.put(event)

        subscription = await channel.subscribe("daily_report", handler)

        admin = redis.from_url(redis_url)
        await admin.client_kill_filter(_type="pubsub")

        assert await asyncio.wait_for(received.get(), timeout=5) is None

        # Still subscribed after the reconnect
        await channel.publish(make_event())
        event = await asyncio.wait_for(received.get(), timeout=5)
        assert event is not None
        assert event.type == EventType.ACQUIRED

        await admin.aclose()
        await subscription.close()
        await channel.close()
