"""Lock records, status views and results exchanged by the lock layer."""

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel


class LockAction(str, Enum):
    """Outcome of an acquire call."""
    ACQUIRED = "acquired"
    FORCE_TAKEOVER = "force_takeover"
    REJECTED = "rejected"


class EventType(str, Enum):
    """Kinds of lock store mutation announced on the invalidation channel."""
    ACQUIRED = "acquired"
    RENEWED = "renewed"
    FORCE_TAKEOVER = "force_takeover"
    RELEASED = "released"
    FORCE_RELEASED = "force_released"


class Identity(BaseModel):
    """A signed-in staff member."""
    user_id: str
    display_name: str
    role: str = "staff"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class LockKey(BaseModel, frozen=True):
    """Identifies one lockable module on one calendar day."""
    module_key: str
    module_date: date

    @property
    def storage_key(self) -> str:
        return f"module_lock:{self.module_key}:{self.module_date.isoformat()}"

    def __str__(self) -> str:
        return f"{self.module_key}@{self.module_date.isoformat()}"


class LockRecord(BaseModel):
    """Current (or most recent) ownership of a module/date."""
    module_key: str
    module_date: date
    locked_by: str
    locked_by_name: str
    locked_at: datetime
    last_renewed_at: datetime
    expires_at: datetime

    @property
    def key(self) -> LockKey:
        return LockKey(module_key=self.module_key, module_date=self.module_date)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class LockStatus(BaseModel):
    """Lock state as seen by one viewer at one instant."""
    is_locked: bool = False
    locked_by: str | None = None
    locked_by_name: str | None = None
    locked_at: datetime | None = None
    expires_at: datetime | None = None
    is_expired: bool = False
    is_mine: bool = False
    can_edit: bool = True


DEFAULT_LOCK_STATUS = LockStatus()


class AcquireResult(BaseModel):
    """Result of a lock acquisition attempt."""
    success: bool
    action: LockAction
    previous_owner: str | None = None
    locked_by: str | None = None  # holder when rejected


class LockEvent(BaseModel):
    """Change hint pushed to subscribers. Never applied as state."""
    module_key: str
    module_date: date
    type: EventType
    actor: str | None = None
    at: datetime


class VersionRecord(BaseModel):
    """A saved snapshot of a module's data."""
    module_key: str
    module_date: date
    version_number: int
    saved_by: str
    data_snapshot: Any
    created_at: datetime
