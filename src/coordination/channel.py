"""Invalidation channel - tells subscribers a module's lock may have changed.

Payloads are hints. Subscribers re-read status from the lock service rather
than applying an event, because events can be dropped or reordered. A handler
called with ``None`` must resync unconditionally: the feed was down and
changes during the gap were not delivered.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

import redis.asyncio as redis
import structlog
from pydantic import ValidationError
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError

from .errors import LockBackendError
from .models import LockEvent

logger = structlog.get_logger()

Handler = Callable[[LockEvent | None], Awaitable[None]]


def channel_name(module_key: str) -> str:
    return f"module_lock:{module_key}"


class Subscription(ABC):
    """Handle for one subscriber."""

    @abstractmethod
    async def close(self) -> None:
        ...


class InvalidationChannel(ABC):
    """Publish/subscribe feed scoped by module key."""

    @abstractmethod
    async def publish(self, event: LockEvent) -> None:
        ...

    @abstractmethod
    async def subscribe(self, module_key: str, handler: Handler) -> Subscription:
        ...

    async def close(self) -> None:
        """Release connections."""


async def _deliver(handler: Handler, event: LockEvent | None, module_key: str) -> None:
    try:
        await handler(event)
    except Exception:
        # A broken subscriber must not stop delivery to the others
        logger.exception("Invalidation handler failed", module_key=module_key)


class _InMemorySubscription(Subscription):
    def __init__(self, channel: "InMemoryInvalidationChannel", module_key: str, handler: Handler):
        self.channel = channel
        self.module_key = module_key
        self.handler = handler

    async def close(self) -> None:
        handlers = self.channel._subscribers.get(self.module_key, [])
        if self.handler in handlers:
            handlers.remove(self.handler)


class InMemoryInvalidationChannel(InvalidationChannel):
    """In-process fan-out for development and tests."""

    def __init__(self):
        self._subscribers: dict[str, list[Handler]] = {}

    async def publish(self, event: LockEvent) -> None:
        for handler in list(self._subscribers.get(event.module_key, [])):
            await _deliver(handler, event, event.module_key)

    async def subscribe(self, module_key: str, handler: Handler) -> Subscription:
        self._subscribers.setdefault(module_key, []).append(handler)
        return _InMemorySubscription(self, module_key, handler)

    async def reset_connections(self) -> None:
        """Drop and re-establish every subscriber, forcing each to resync."""
        for module_key, handlers in list(self._subscribers.items()):
            for handler in list(handlers):
                await _deliver(handler, None, module_key)


class _RedisSubscription(Subscription):
    def __init__(self, task: asyncio.Task):
        self.task = task

    async def close(self) -> None:
        self.task.cancel()
        try:
            await self.task
        except asyncio.CancelledError:
            pass


class RedisInvalidationChannel(InvalidationChannel):
    """Redis pub/sub feed, one channel per module key."""

    def __init__(self, redis_url: str, reconnect_delay: float = 2.0):
        self.redis_url = redis_url
        self.reconnect_delay = reconnect_delay
        self.redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Lazy Redis connection."""
        if self.redis is None:
            # No silent client-side reconnects: the listener must see every
            # drop so it can tell subscribers to resync
            self.redis = redis.from_url(self.redis_url, retry=Retry(NoBackoff(), 0))
        return self.redis

    async def publish(self, event: LockEvent) -> None:
        r = await self._get_redis()
        try:
            await r.publish(channel_name(event.module_key), event.model_dump_json())
        except RedisError as e:
            raise LockBackendError(f"Could not publish lock event: {e}") from e

    async def subscribe(self, module_key: str, handler: Handler) -> Subscription:
        """Start listening; returns once the first SUBSCRIBE succeeded."""
        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._listen(module_key, handler, ready))
        try:
            await ready
        except BaseException:
            task.cancel()
            raise
        return _RedisSubscription(task)

    async def _listen(self, module_key: str, handler: Handler, ready: asyncio.Future) -> None:
        r = await self._get_redis()
        name = channel_name(module_key)
        reconnecting = False

        while True:
            pubsub = r.pubsub()
            try:
                await pubsub.subscribe(name)
                if not ready.done():
                    ready.set_result(None)
                elif reconnecting:
                    logger.info("Invalidation channel reconnected", module_key=module_key)
                    await _deliver(handler, None, module_key)
                reconnecting = False

                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    try:
                        event = LockEvent.model_validate_json(message["data"])
                    except ValidationError:
                        # Unreadable hint is still a hint
                        event = None
                    await _deliver(handler, event, module_key)
            except RedisError as e:
                if not ready.done():
                    ready.set_exception(
                        LockBackendError(f"Could not subscribe to {name}: {e}")
                    )
                    return
                logger.warning(
                    "Invalidation channel dropped",
                    module_key=module_key,
                    error=str(e),
                )
                reconnecting = True
                await asyncio.sleep(self.reconnect_delay)
            finally:
                await pubsub.aclose()

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
