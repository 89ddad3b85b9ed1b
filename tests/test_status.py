"""Tests for the status resolver."""

from datetime import date, datetime, timedelta, timezone

from src.coordination.models import DEFAULT_LOCK_STATUS, LockRecord
from src.coordination.status import resolve_status

NOW = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def make_record(owner: str = "alice", expires_in: timedelta = timedelta(minutes=5)) -> LockRecord:
    return LockRecord(
        module_key="daily_report",
        module_date=date(2024, 1, 1),
        locked_by=owner,
        locked_by_name=owner.title(),
        locked_at=NOW,
        last_renewed_at=NOW,
        expires_at=NOW + expires_in,
    )


class TestResolveStatus:
    """Test status derivation from raw records."""

    def test_no_record_is_unlocked(self):
        """A missing record means anyone can edit."""
        status = resolve_status(None, NOW, "alice")

        assert status == DEFAULT_LOCK_STATUS
        assert status.is_locked is False
        assert status.can_edit is True

    def test_owner_sees_own_lock(self):
        """The holder sees the lock as theirs and editable."""
        status = resolve_status(make_record("alice"), NOW, "alice")

        assert status.is_locked
        assert status.is_mine
        assert status.can_edit
        assert status.locked_by_name == "Alice"

    def test_other_viewer_is_read_only(self):
        """Anyone else sees a live lock as not editable."""
        status = resolve_status(make_record("alice"), NOW, "bob")

        assert status.is_locked
        assert not status.is_mine
        assert not status.is_expired
        assert not status.can_edit

    def test_expiry_is_evaluated_at_read_time(self):
        """The same record reads as expired once the clock passes expires_at."""
        record = make_record("alice", expires_in=timedelta(minutes=5))

        before = resolve_status(record, NOW + timedelta(minutes=4, seconds=59), "bob")
        at_boundary = resolve_status(record, NOW + timedelta(minutes=5), "bob")

        assert not before.is_expired
        assert not before.can_edit
        assert at_boundary.is_expired
        assert at_boundary.can_edit
        assert at_boundary.is_locked

    def test_anonymous_viewer_never_owns(self):
        """Without a viewer id nothing is mine."""
        status = resolve_status(make_record("alice"), NOW, None)

        assert not status.is_mine
        assert not status.can_edit

    def test_default_status_is_not_shared(self):
        """Callers get a copy of the default view."""
        status = resolve_status(None, NOW, "alice")
        status.can_edit = False

        assert DEFAULT_LOCK_STATUS.can_edit is True
