"""Version history for an editing session."""

from typing import Any, Protocol

import structlog

from src.coordination.errors import LockError, ReadOnlyModuleError
from src.coordination.models import Identity, LockKey, VersionRecord

from .manager import ModuleLockManager, NoticeCallback

logger = structlog.get_logger()


class VersionBackend(Protocol):
    async def save_version(self, key: LockKey, requester: Identity, snapshot: Any) -> int: ...

    async def list_versions(self, key: LockKey, limit: int | None = None) -> list[VersionRecord]: ...

    async def load_version(self, key: LockKey, version_number: int) -> VersionRecord | None: ...


class ModuleVersionHistory:
    """Saves and restores snapshots of the module a manager is editing."""

    def __init__(
        self,
        backend: VersionBackend,
        manager: ModuleLockManager,
        limit: int = 10,
        on_notice: NoticeCallback | None = None,
    ):
        self.backend = backend
        self.manager = manager
        self.limit = limit
        self.on_notice = on_notice or manager.on_notice
        self.versions: list[VersionRecord] = []

    @property
    def key(self) -> LockKey:
        return self.manager.key

    def _notice(self, level: str, message: str) -> None:
        if self.on_notice is not None:
            self.on_notice(level, message)

    async def fetch_versions(self) -> list[VersionRecord]:
        """Reload the most recent versions, newest first."""
        if self.manager.identity is None:
            return self.versions
        try:
            self.versions = await self.backend.list_versions(self.key, self.limit)
        except LockError as e:
            logger.error("Error fetching versions", lock=str(self.key), error=str(e))
        return self.versions

    async def save_version(self, data: Any) -> int | None:
        """Save ``data`` as a new version. Requires edit control."""
        identity = self.manager.identity
        if identity is None:
            return None
        if self.manager.is_read_only:
            self._notice("error", "You do not have edit control")
            return None

        try:
            number = await self.backend.save_version(self.key, identity, data)
        except ReadOnlyModuleError as e:
            logger.info("Version save refused", lock=str(self.key), locked_by=e.locked_by)
            self._notice("error", "You do not have edit control")
            await self.manager.fetch_status()
            return None
        except LockError as e:
            logger.error("Error saving version", lock=str(self.key), error=str(e))
            self._notice("error", "Could not save version")
            return None

        await self.fetch_versions()
        return number

    async def load_version(self, version_number: int) -> Any | None:
        """Snapshot data of a version, from cache when possible."""
        for version in self.versions:
            if version.version_number == version_number:
                return version.data_snapshot

        try:
            record = await self.backend.load_version(self.key, version_number)
        except LockError as e:
            logger.error("Error loading version", lock=str(self.key), error=str(e))
            self._notice("error", "Could not load version")
            return None
        return record.data_snapshot if record else None

    async def restore_version(self, version_number: int) -> Any | None:
        """Load a version for editing. Refused while read-only."""
        if self.manager.is_read_only:
            self._notice("error", "Take edit control before restoring a version")
            return None
        data = await self.load_version(version_number)
        if data is not None:
            self._notice("success", f"Version {version_number} restored")
        return data
