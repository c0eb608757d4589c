"""Shared fixtures for fleetwatch unit tests"""
from datetime import datetime, timedelta

import pytest

from fleetwatch.store import MetricStore


class FakeClock:
    """Settable clock returning naive UTC datetimes"""

    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 18, 12, 0, 0))


@pytest.fixture
def store(tmp_path, clock):
    """File-backed SQLite store with the schema created"""
    s = MetricStore.from_url(f"sqlite:///{tmp_path / 'monitor.db'}", clock=clock)
    s.create_schema()
    yield s
    s.close()
