"""Lock store - the durable table of module lock records.

Every write goes through ``transact``: the caller's ``decide`` function sees
the current record and returns the replacement, and the store commits it only
if nobody else committed in between.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import date, datetime, timedelta
from typing import Any, TypeVar

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError, WatchError

from .errors import LockStoreError
from .models import LockKey, LockRecord

logger = structlog.get_logger()

T = TypeVar("T")

# Returned by a decide function that wants no write
UNCHANGED: Any = object()

Decide = Callable[[LockRecord | None], tuple[Any, T]]


class LockStore(ABC):
    """Keyed storage for lock records with atomic conditional writes."""

    @abstractmethod
    async def get(self, key: LockKey) -> LockRecord | None:
        """Read the stored record, expired or not."""
        ...

    @abstractmethod
    async def transact(self, key: LockKey, decide: Decide[T]) -> T:
        """Atomically read ``key``, apply ``decide`` and write its result.

        ``decide`` returns ``(new_record, outcome)``. ``new_record`` may be a
        ``LockRecord`` to store, ``None`` to delete, or ``UNCHANGED``. It may
        run more than once if a concurrent writer wins the race, so it must
        not have side effects.
        """
        ...

    @abstractmethod
    async def list_records(self, module_date: date | None = None) -> list[LockRecord]:
        """All stored records, optionally for one day."""
        ...

    async def close(self) -> None:
        """Release connections."""


class InMemoryLockStore(LockStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self._records: dict[LockKey, LockRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: LockKey) -> LockRecord | None:
        record = self._records.get(key)
        return record.model_copy() if record else None

    async def transact(self, key: LockKey, decide: Decide[T]) -> T:
        async with self._lock:
            current = self._records.get(key)
            new_record, outcome = decide(current.model_copy() if current else None)
            if new_record is UNCHANGED:
                return outcome
            if new_record is None:
                self._records.pop(key, None)
            else:
                self._records[key] = new_record.model_copy()
            return outcome

    async def list_records(self, module_date: date | None = None) -> list[LockRecord]:
        return [
            record.model_copy()
            for key, record in self._records.items()
            if module_date is None or key.module_date == module_date
        ]


class RedisLockStore(LockStore):
    """Redis-backed store using WATCH/MULTI optimistic transactions."""

    def __init__(
        self,
        redis_url: str,
        retention: timedelta = timedelta(days=1),
        max_retries: int = 5,
    ):
        self.redis_url = redis_url
        self.retention = retention
        self.max_retries = max_retries
        self.redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Lazy Redis connection."""
        if self.redis is None:
            self.redis = redis.from_url(self.redis_url)
        return self.redis

    def _expire_at(self, record: LockRecord) -> datetime:
        # Expired records stay readable so a takeover can name the previous owner
        return record.expires_at + self.retention

    async def get(self, key: LockKey) -> LockRecord | None:
        r = await self._get_redis()
        try:
            data = await r.get(key.storage_key)
        except RedisError as e:
            raise LockStoreError(f"Could not read lock {key}: {e}") from e
        if not data:
            return None
        return LockRecord.model_validate_json(data)

    async def transact(self, key: LockKey, decide: Decide[T]) -> T:
        r = await self._get_redis()
        name = key.storage_key

        for attempt in range(1, self.max_retries + 1):
            try:
                async with r.pipeline(transaction=True) as pipe:
                    await pipe.watch(name)
                    data = await pipe.get(name)
                    current = LockRecord.model_validate_json(data) if data else None

                    new_record, outcome = decide(current)
                    if new_record is UNCHANGED:
                        await pipe.unwatch()
                        return outcome

                    pipe.multi()
                    if new_record is None:
                        pipe.delete(name)
                    else:
                        pipe.set(
                            name,
                            new_record.model_dump_json(),
                            exat=self._expire_at(new_record),
                        )
                    await pipe.execute()
                    return outcome
            except WatchError:
                logger.debug("Lock write raced, retrying", lock=str(key), attempt=attempt)
            except RedisError as e:
                raise LockStoreError(f"Could not write lock {key}: {e}") from e

        raise LockStoreError(f"Gave up writing lock {key} after {self.max_retries} races")

    async def list_records(self, module_date: date | None = None) -> list[LockRecord]:
        r = await self._get_redis()
        pattern = f"module_lock:*:{module_date.isoformat()}" if module_date else "module_lock:*"

        records = []
        try:
            async for name in r.scan_iter(match=pattern):
                data = await r.get(name)
                if data:
                    records.append(LockRecord.model_validate_json(data))
        except RedisError as e:
            raise LockStoreError(f"Could not list locks: {e}") from e

        return records

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
