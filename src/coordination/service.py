"""Lock service - the single arbiter of module edit locks.

Each operation is one ``LockStore.transact`` call, so the ownership check and
the write commit together. Two sessions racing for a vacant or expired module
cannot both win: the second to commit re-runs its decision against the
first winner's record.
"""

from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone

import structlog

from src.server.config import Settings

from .channel import InvalidationChannel
from .errors import LockBackendError, UnknownModuleError
from .models import (
    AcquireResult,
    EventType,
    Identity,
    LockAction,
    LockEvent,
    LockKey,
    LockRecord,
    LockStatus,
)
from .status import resolve_status
from .store import UNCHANGED, LockStore

logger = structlog.get_logger()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockService:
    """Acquire, release, refresh and inspect module locks."""

    def __init__(
        self,
        settings: Settings,
        store: LockStore,
        channel: InvalidationChannel | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.channel = channel
        self.clock = clock

    def lease_for(self, module_key: str) -> timedelta:
        """Lease duration for a module class."""
        return timedelta(seconds=self.settings.lease_seconds_for(module_key))

    def check_module(self, key: LockKey) -> None:
        if key.module_key not in self.settings.lockable_modules:
            raise UnknownModuleError(key.module_key)

    async def _publish(self, key: LockKey, event_type: EventType, actor: str) -> None:
        if self.channel is None:
            return
        event = LockEvent(
            module_key=key.module_key,
            module_date=key.module_date,
            type=event_type,
            actor=actor,
            at=self.clock(),
        )
        try:
            await self.channel.publish(event)
        except LockBackendError as e:
            # Subscribers still converge on their next status fetch
            logger.warning("Lock event not published", lock=str(key), error=str(e))

    async def acquire(self, key: LockKey, requester: Identity) -> AcquireResult:
        """Take the lock, renew our own, or take over an expired one."""
        self.check_module(key)
        lease = self.lease_for(key.module_key)

        def decide(current: LockRecord | None):
            now = self.clock()

            if current is None:
                record = LockRecord(
                    module_key=key.module_key,
                    module_date=key.module_date,
                    locked_by=requester.user_id,
                    locked_by_name=requester.display_name,
                    locked_at=now,
                    last_renewed_at=now,
                    expires_at=now + lease,
                )
                return record, AcquireResult(success=True, action=LockAction.ACQUIRED)

            if current.locked_by == requester.user_id:
                # Re-acquire keeps the original lock time
                current.locked_by_name = requester.display_name
                current.last_renewed_at = now
                current.expires_at = now + lease
                return current, AcquireResult(success=True, action=LockAction.ACQUIRED)

            if not current.is_expired(now):
                return UNCHANGED, AcquireResult(
                    success=False,
                    action=LockAction.REJECTED,
                    locked_by=current.locked_by,
                )

            record = LockRecord(
                module_key=key.module_key,
                module_date=key.module_date,
                locked_by=requester.user_id,
                locked_by_name=requester.display_name,
                locked_at=now,
                last_renewed_at=now,
                expires_at=now + lease,
            )
            return record, AcquireResult(
                success=True,
                action=LockAction.FORCE_TAKEOVER,
                previous_owner=current.locked_by,
            )

        result = await self.store.transact(key, decide)

        if result.action == LockAction.REJECTED:
            logger.info(
                "Lock acquire rejected",
                lock=str(key),
                requester=requester.user_id,
                holder=result.locked_by,
            )
            return result

        logger.info(
            "Lock acquired",
            lock=str(key),
            requester=requester.user_id,
            action=result.action.value,
            previous_owner=result.previous_owner,
        )
        event_type = (
            EventType.FORCE_TAKEOVER
            if result.action == LockAction.FORCE_TAKEOVER
            else EventType.ACQUIRED
        )
        await self._publish(key, event_type, requester.user_id)
        return result

    async def release(self, key: LockKey, requester: Identity) -> bool:
        """Clear the lock if the requester currently holds it."""
        self.check_module(key)

        def decide(current: LockRecord | None):
            if (
                current is None
                or current.locked_by != requester.user_id
                or current.is_expired(self.clock())
            ):
                return UNCHANGED, False
            return None, True

        released = await self.store.transact(key, decide)

        if released:
            logger.info("Lock released", lock=str(key), requester=requester.user_id)
            await self._publish(key, EventType.RELEASED, requester.user_id)
        else:
            logger.debug("Release ignored, not the owner", lock=str(key), requester=requester.user_id)

        return released

    async def refresh(self, key: LockKey, requester: Identity) -> bool:
        """Extend the requester's lease. False means ownership was lost."""
        self.check_module(key)
        lease = self.lease_for(key.module_key)

        def decide(current: LockRecord | None):
            now = self.clock()
            if current is None or current.locked_by != requester.user_id:
                return UNCHANGED, False
            if current.is_expired(now) and not self.settings.refresh_after_expiry:
                return UNCHANGED, False
            current.last_renewed_at = now
            current.expires_at = now + lease
            return current, True

        refreshed = await self.store.transact(key, decide)

        if refreshed:
            logger.debug("Lock refreshed", lock=str(key), requester=requester.user_id)
            await self._publish(key, EventType.RENEWED, requester.user_id)
        else:
            logger.info("Lock refresh refused", lock=str(key), requester=requester.user_id)

        return refreshed

    async def get_status(self, key: LockKey, viewer_id: str | None) -> LockStatus:
        """Status of the lock as seen by ``viewer_id`` now."""
        self.check_module(key)
        record = await self.store.get(key)
        return resolve_status(record, self.clock(), viewer_id)

    async def force_release(self, key: LockKey, admin: Identity) -> bool:
        """Clear the lock regardless of owner."""
        self.check_module(key)

        def decide(current: LockRecord | None):
            if current is None:
                return UNCHANGED, None
            return None, current.locked_by

        previous = await self.store.transact(key, decide)
        if previous is None:
            return False

        logger.warning(
            "Lock force released",
            lock=str(key),
            admin=admin.user_id,
            previous_owner=previous,
        )
        await self._publish(key, EventType.FORCE_RELEASED, admin.user_id)
        return True

    async def list_active(self, module_date: date | None = None) -> list[LockRecord]:
        """Non-expired locks, most recently acquired first."""
        now = self.clock()
        records = await self.store.list_records(module_date)
        active = [r for r in records if not r.is_expired(now)]
        return sorted(active, key=lambda r: r.locked_at, reverse=True)
