"""Version history - snapshots of module data saved by the lock holder."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from .errors import LockStoreError, ReadOnlyModuleError
from .models import Identity, LockKey, VersionRecord
from .service import LockService

logger = structlog.get_logger()


class VersionStore(ABC):
    """Append-only storage of numbered snapshots per module/date."""

    @abstractmethod
    async def append(self, key: LockKey, build) -> VersionRecord:
        """Assign the next version number and store ``build(number)``."""
        ...

    @abstractmethod
    async def recent(self, key: LockKey, limit: int) -> list[VersionRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def get(self, key: LockKey, version_number: int) -> VersionRecord | None:
        ...

    async def close(self) -> None:
        """Release connections."""


class InMemoryVersionStore(VersionStore):
    """Process-local version store."""

    def __init__(self):
        self._versions: dict[LockKey, list[VersionRecord]] = {}
        self._lock = asyncio.Lock()

    async def append(self, key: LockKey, build) -> VersionRecord:
        async with self._lock:
            versions = self._versions.setdefault(key, [])
            record = build(len(versions) + 1)
            versions.append(record)
            return record

    async def recent(self, key: LockKey, limit: int) -> list[VersionRecord]:
        return list(reversed(self._versions.get(key, [])))[:limit]

    async def get(self, key: LockKey, version_number: int) -> VersionRecord | None:
        for record in self._versions.get(key, []):
            if record.version_number == version_number:
                return record
        return None


class RedisVersionStore(VersionStore):
    """Redis hash of snapshots plus a counter per module/date."""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Lazy Redis connection."""
        if self.redis is None:
            self.redis = redis.from_url(self.redis_url)
        return self.redis

    def _versions_key(self, key: LockKey) -> str:
        return f"module_versions:{key.module_key}:{key.module_date.isoformat()}"

    async def append(self, key: LockKey, build) -> VersionRecord:
        r = await self._get_redis()
        name = self._versions_key(key)
        try:
            number = await r.incr(f"{name}:seq")
            record = build(number)
            await r.hset(name, str(number), record.model_dump_json())
        except RedisError as e:
            raise LockStoreError(f"Could not save version for {key}: {e}") from e
        return record

    async def recent(self, key: LockKey, limit: int) -> list[VersionRecord]:
        r = await self._get_redis()
        try:
            raw = await r.hgetall(self._versions_key(key))
        except RedisError as e:
            raise LockStoreError(f"Could not list versions for {key}: {e}") from e
        records = [VersionRecord.model_validate_json(v) for v in raw.values()]
        records.sort(key=lambda v: v.version_number, reverse=True)
        return records[:limit]

    async def get(self, key: LockKey, version_number: int) -> VersionRecord | None:
        r = await self._get_redis()
        try:
            data = await r.hget(self._versions_key(key), str(version_number))
        except RedisError as e:
            raise LockStoreError(f"Could not load version for {key}: {e}") from e
        return VersionRecord.model_validate_json(data) if data else None

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None


class VersionHistoryService:
    """Saves and loads module snapshots, gated by the edit lock."""

    def __init__(self, lock_service: LockService, store: VersionStore):
        self.lock_service = lock_service
        self.store = store
        self.default_limit = lock_service.settings.version_history_limit

    async def save_version(self, key: LockKey, requester: Identity, snapshot: Any) -> int:
        """Store a snapshot and return its version number."""
        status = await self.lock_service.get_status(key, requester.user_id)
        if not status.can_edit:
            raise ReadOnlyModuleError(str(key), status.locked_by)

        def build(number: int) -> VersionRecord:
            return VersionRecord(
                module_key=key.module_key,
                module_date=key.module_date,
                version_number=number,
                saved_by=requester.user_id,
                data_snapshot=snapshot,
                created_at=self.lock_service.clock(),
            )

        record = await self.store.append(key, build)
        logger.info(
            "Saved module version",
            lock=str(key),
            version=record.version_number,
            saved_by=requester.user_id,
        )
        return record.version_number

    async def list_versions(self, key: LockKey, limit: int | None = None) -> list[VersionRecord]:
        self.lock_service.check_module(key)
        return await self.store.recent(key, limit or self.default_limit)

    async def load_version(self, key: LockKey, version_number: int) -> VersionRecord | None:
        self.lock_service.check_module(key)
        return await self.store.get(key, version_number)
