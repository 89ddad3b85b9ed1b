"""Status resolver - derives what a viewer sees from a raw lock record."""

from datetime import datetime

from .models import DEFAULT_LOCK_STATUS, LockRecord, LockStatus


def resolve_status(
    record: LockRecord | None,
    now: datetime,
    viewer_id: str | None,
) -> LockStatus:
    """Build the status view of ``record`` for ``viewer_id`` at ``now``.

    Expiry is evaluated here, against the reader's clock, on every call.
    Nothing announces an expiry, so a cached ``is_expired`` goes stale.
    """
    if record is None:
        return DEFAULT_LOCK_STATUS.model_copy()

    is_expired = record.is_expired(now)
    is_mine = viewer_id is not None and record.locked_by == viewer_id

    return LockStatus(
        is_locked=True,
        locked_by=record.locked_by,
        locked_by_name=record.locked_by_name,
        locked_at=record.locked_at,
        expires_at=record.expires_at,
        is_expired=is_expired,
        is_mine=is_mine,
        can_edit=is_mine or is_expired,
    )
