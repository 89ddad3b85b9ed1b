"""Coordination layer - module edit locks and version history."""

from .channel import (
    InMemoryInvalidationChannel,
    InvalidationChannel,
    RedisInvalidationChannel,
)
from .errors import (
    LockBackendError,
    LockError,
    LockStoreError,
    ReadOnlyModuleError,
    UnknownModuleError,
)
from .models import (
    DEFAULT_LOCK_STATUS,
    AcquireResult,
    Identity,
    LockAction,
    LockEvent,
    LockKey,
    LockRecord,
    LockStatus,
    VersionRecord,
)
from .service import LockService
from .status import resolve_status
from .store import InMemoryLockStore, LockStore, RedisLockStore
from .versions import (
    InMemoryVersionStore,
    RedisVersionStore,
    VersionHistoryService,
    VersionStore,
)

__all__ = [
    "AcquireResult",
    "DEFAULT_LOCK_STATUS",
    "Identity",
    "InMemoryInvalidationChannel",
    "InMemoryLockStore",
    "InMemoryVersionStore",
    "InvalidationChannel",
    "LockAction",
    "LockBackendError",
    "LockError",
    "LockEvent",
    "LockKey",
    "LockRecord",
    "LockService",
    "LockStatus",
    "LockStore",
    "LockStoreError",
    "ReadOnlyModuleError",
    "RedisInvalidationChannel",
    "RedisLockStore",
    "RedisVersionStore",
    "UnknownModuleError",
    "VersionHistoryService",
    "VersionRecord",
    "VersionStore",
    "resolve_status",
]
