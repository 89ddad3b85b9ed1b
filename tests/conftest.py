"""Shared test fixtures."""

import os
from datetime import date, datetime, timedelta, timezone

import pytest

# Set test environment variables before imports that might trigger Settings
os.environ.setdefault("JWT_SECRET", "test-secret")


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    """Clock starting at midnight on the report day."""
    return FakeClock(datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def report_day():
    return date(2024, 1, 1)


@pytest.fixture
def settings():
    """Create test settings."""
    from src.server.config import Settings

    return Settings(
        jwt_secret="test-secret",
        store_backend="memory",
        lock_lease_seconds=300,
    )


@pytest.fixture
def live_clock():
    """Clock starting now, for stores that expire records in real time."""
    return FakeClock(datetime.now(timezone.utc))


@pytest.fixture
def redis_url():
    """URL of a reachable Redis server; skips the test otherwise."""
    import redis

    url = os.environ.get("REDIS_URL", "redis://localhost:6379")
    client = redis.Redis.from_url(url, socket_connect_timeout=0.5)
    try:
        client.ping()
    except redis.RedisError:
        pytest.skip("Requires Redis connection")
    finally:
        client.close()
    return url
