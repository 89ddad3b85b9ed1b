"""Lock manager - drives one editing session's acquire/heartbeat/release cycle.

The manager is the only place where lock failures turn into session state.
Nothing it calls on behalf of the UI raises: rejected acquires return False,
lost leases move the session to LOST, and unreachable backends produce an
error notice.
"""

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
from enum import Enum
from typing import Protocol

import structlog

from src.coordination.channel import InvalidationChannel, Subscription
from src.coordination.errors import LockError
from src.coordination.models import (
    DEFAULT_LOCK_STATUS,
    AcquireResult,
    Identity,
    LockAction,
    LockEvent,
    LockKey,
    LockStatus,
)
from src.server.config import Settings

logger = structlog.get_logger()


class LockBackend(Protocol):
    """What a session needs from the lock service (in-process or HTTP)."""

    async def acquire(self, key: LockKey, requester: Identity) -> AcquireResult: ...

    async def release(self, key: LockKey, requester: Identity) -> bool: ...

    async def refresh(self, key: LockKey, requester: Identity) -> bool: ...

    async def get_status(self, key: LockKey, viewer_id: str | None) -> LockStatus: ...


class SessionState(str, Enum):
    """Editing session lock states."""
    UNLOCKED = "unlocked"
    ACQUIRING = "acquiring"
    OWNED = "owned"
    LOST = "lost"
    RELEASING = "releasing"


# Valid state transitions
TRANSITIONS: dict[SessionState, list[SessionState]] = {
    SessionState.UNLOCKED: [SessionState.ACQUIRING],
    SessionState.ACQUIRING: [SessionState.OWNED, SessionState.UNLOCKED],
    SessionState.OWNED: [SessionState.RELEASING, SessionState.LOST],
    SessionState.LOST: [SessionState.ACQUIRING, SessionState.UNLOCKED],
    SessionState.RELEASING: [SessionState.UNLOCKED],
}

TakeoverCallback = Callable[[str], Awaitable[None]]
NoticeCallback = Callable[[str, str], None]  # (level, message)


class ModuleLockManager:
    """Per-session edit lock for one module on one day."""

    def __init__(
        self,
        backend: LockBackend,
        identity: Identity | None,
        module_key: str,
        module_date: date | None = None,
        *,
        channel: InvalidationChannel | None = None,
        on_force_takeover: TakeoverCallback | None = None,
        on_notice: NoticeCallback | None = None,
        auto_acquire: bool = False,
        heartbeat_interval: float = 150.0,
        activity_debounce: float = 30.0,
    ):
        self.backend = backend
        self.identity = identity
        self.key = LockKey(
            module_key=module_key,
            module_date=module_date or datetime.now(timezone.utc).date(),
        )
        self.channel = channel
        self.on_force_takeover = on_force_takeover
        self.on_notice = on_notice
        self.auto_acquire = auto_acquire
        self.heartbeat_interval = heartbeat_interval
        self.activity_debounce = activity_debounce

        self.state = SessionState.UNLOCKED
        self.lock_status: LockStatus = DEFAULT_LOCK_STATUS.model_copy()
        self.is_loading = True
        self.release_task: asyncio.Task | None = None

        # Bumped on every state transition; status replies requested under
        # an older generation are dropped
        self._generation = 0
        self._op_lock = asyncio.Lock()
        self._heartbeat_task: asyncio.Task | None = None
        self._activity_task: asyncio.Task | None = None
        self._subscription: Subscription | None = None
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        backend: LockBackend,
        identity: Identity | None,
        module_key: str,
        module_date: date | None = None,
        **kwargs,
    ) -> "ModuleLockManager":
        """Manager with timer intervals taken from settings."""
        kwargs.setdefault("heartbeat_interval", settings.heartbeat_interval_for(module_key))
        kwargs.setdefault("activity_debounce", settings.activity_debounce_seconds)
        return cls(backend, identity, module_key, module_date, **kwargs)

    @property
    def is_read_only(self) -> bool:
        return not self.lock_status.can_edit

    async def __aenter__(self) -> "ModuleLockManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _transition(self, new_state: SessionState) -> None:
        valid_next = TRANSITIONS.get(self.state, [])
        if new_state not in valid_next:
            raise ValueError(
                f"Invalid transition: {self.state} -> {new_state}. "
                f"Valid: {valid_next}"
            )
        logger.debug(
            "Lock session transition",
            lock=str(self.key),
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state
        self._generation += 1

    def _notice(self, level: str, message: str) -> None:
        if self.on_notice is not None:
            self.on_notice(level, message)

    # === Lifecycle ===

    async def start(self) -> None:
        """Subscribe to changes, load status and optionally take the lock."""
        if self.identity is not None and self.channel is not None:
            try:
                self._subscription = await self.channel.subscribe(
                    self.key.module_key, self._on_invalidation
                )
            except LockError as e:
                logger.warning("Lock change feed unavailable", lock=str(self.key), error=str(e))

        await self.fetch_status()

        if self.auto_acquire and self.identity is not None:
            await self.acquire_lock()

    async def close(self) -> None:
        """Tear down timers and the subscription, then release without waiting."""
        if self._closed:
            return
        self._closed = True

        for task in self._stop_timers():
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

        if self.state is SessionState.OWNED:
            self._transition(SessionState.RELEASING)
            self.release_task = asyncio.create_task(self._release_quietly())
        elif self.state is SessionState.LOST:
            self._transition(SessionState.UNLOCKED)

    async def _release_quietly(self) -> None:
        try:
            await self.backend.release(self.key, self.identity)
        except LockError as e:
            # Lease expiry reclaims the lock anyway
            logger.debug("Teardown release failed", lock=str(self.key), error=str(e))
        finally:
            self.state = SessionState.UNLOCKED

    # === Status ===

    async def fetch_status(self) -> LockStatus:
        """Re-derive lock status from the service."""
        if self.identity is None:
            self.lock_status = DEFAULT_LOCK_STATUS.model_copy()
            self.is_loading = False
            return self.lock_status

        generation = self._generation
        try:
            status = await self.backend.get_status(self.key, self.identity.user_id)
        except LockError as e:
            logger.error("Error fetching lock status", lock=str(self.key), error=str(e))
            return self.lock_status
        finally:
            self.is_loading = False

        if generation != self._generation:
            logger.debug("Dropping stale lock status", lock=str(self.key))
            return self.lock_status

        if self.state is SessionState.OWNED and not status.is_mine:
            # Only a refused refresh proves the lock is gone
            await self.refresh_lock()
            return self.lock_status

        self.lock_status = status
        return status

    async def _on_invalidation(self, event: LockEvent | None) -> None:
        if self._closed:
            return
        if event is None:
            logger.info("Resyncing lock status after reconnect", lock=str(self.key))
        else:
            logger.debug("Lock changed", lock=str(self.key), event_type=event.type.value)
        await self.fetch_status()

    # === Operations ===

    async def acquire_lock(self) -> bool:
        """Try to take edit control. Already owning it counts as success."""
        if self.identity is None or self._closed:
            return False

        async with self._op_lock:
            if self.state is SessionState.OWNED:
                return True

            self._transition(SessionState.ACQUIRING)
            self.is_loading = True
            try:
                result = await self.backend.acquire(self.key, self.identity)
            except LockError as e:
                logger.error("Error acquiring lock", lock=str(self.key), error=str(e))
                self._transition(SessionState.UNLOCKED)
                self._notice("error", "Could not take edit control")
                return False
            finally:
                self.is_loading = False

            if self._closed:
                # Session ended while the request was in flight
                self._transition(SessionState.UNLOCKED)
                if result.success:
                    self.release_task = asyncio.create_task(self._release_quietly())
                return False

            if not result.success:
                self._transition(SessionState.UNLOCKED)
                await self.fetch_status()
                return False

            self._transition(SessionState.OWNED)
            self._start_heartbeat()

            if result.action == LockAction.FORCE_TAKEOVER and result.previous_owner:
                await self._run_takeover_callback(result.previous_owner)

            await self.fetch_status()

        if result.action == LockAction.FORCE_TAKEOVER:
            self._notice("success", "Edit control transferred to you")
        else:
            self._notice("success", "Edit control active")
        return True

    async def release_lock(self) -> None:
        """Give up edit control."""
        if self.identity is None:
            return

        async with self._op_lock:
            if self.state is not SessionState.OWNED:
                return

            self._transition(SessionState.RELEASING)
            self._stop_timers()
            try:
                await self.backend.release(self.key, self.identity)
            except LockError as e:
                logger.error("Error releasing lock", lock=str(self.key), error=str(e))
                self._notice("error", "Could not release edit control")
            finally:
                self._transition(SessionState.UNLOCKED)
            self.lock_status = DEFAULT_LOCK_STATUS.model_copy()

        await self.fetch_status()

    async def refresh_lock(self) -> None:
        """Extend the lease. A refusal means someone else has the lock now."""
        if self.identity is None or self.state is not SessionState.OWNED:
            return

        try:
            refreshed = await self.backend.refresh(self.key, self.identity)
        except LockError as e:
            # No retry here; the next heartbeat tries again
            logger.warning("Error refreshing lock", lock=str(self.key), error=str(e))
            self._notice("error", "Could not reach the lock service")
            return

        if not refreshed and self.state is SessionState.OWNED:
            self._mark_lost()
            await self.fetch_status()

    def notify_activity(self) -> None:
        """Record user activity; renews the lease after a quiet period."""
        if self.state is not SessionState.OWNED:
            return
        if self._activity_task is not None:
            self._activity_task.cancel()
        self._activity_task = asyncio.create_task(self._refresh_after_activity())

    async def _refresh_after_activity(self) -> None:
        await asyncio.sleep(self.activity_debounce)
        self._activity_task = None
        await self.refresh_lock()

    async def _run_takeover_callback(self, previous_owner: str) -> None:
        if self.on_force_takeover is None:
            return
        try:
            await self.on_force_takeover(previous_owner)
        except Exception:
            logger.exception(
                "Force takeover callback failed",
                lock=str(self.key),
                previous_owner=previous_owner,
            )

    def _mark_lost(self) -> None:
        self._transition(SessionState.LOST)
        self._stop_timers()
        logger.warning("Lock ownership lost", lock=str(self.key), user=self.identity.user_id)
        self._notice("warning", "Edit control was taken by another user")

    # === Timers ===

    def _start_heartbeat(self) -> None:
        self._stop_timers()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        while self.state is SessionState.OWNED:
            await asyncio.sleep(self.heartbeat_interval)
            await self.refresh_lock()

    def _stop_timers(self) -> list[asyncio.Task]:
        """Cancel heartbeat and activity timers; returns the cancelled tasks."""
        current = asyncio.current_task()
        cancelled = []
        for task in (self._heartbeat_task, self._activity_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
                cancelled.append(task)
        self._heartbeat_task = None
        self._activity_task = None
        return cancelled
