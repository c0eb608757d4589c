"""
Unit tests for the retention scheduler.
"""

import asyncio
from datetime import datetime, time, timedelta
from unittest.mock import Mock, patch

from fleetwatch.errors import StorageError
from fleetwatch.models import Sample
from fleetwatch.retention import RetentionScheduler, next_run_after
from fleetwatch.store import MetricStore


def make_store(deleted=0):
    store = Mock(spec=MetricStore)
    store.delete_older_than.return_value = deleted
    return store


class TestNextRunAfter:
    """Test next-occurrence computation"""

    def test_before_run_time_is_same_day(self):
        """Test a time before 03:00 schedules the same day"""
        now = datetime(2026, 10, 18, 1, 30)
        assert next_run_after(now, time(3, 0)) == datetime(2026, 10, 18, 3, 0)

    def test_after_run_time_is_next_day(self):
        """Test a time after 03:00 schedules the next day"""
        now = datetime(2026, 10, 18, 14, 0)
        assert next_run_after(now, time(3, 0)) == datetime(2026, 10, 19, 3, 0)

    def test_exactly_at_run_time_is_strictly_future(self):
        """Test the run time itself schedules the next day"""
        now = datetime(2026, 10, 18, 3, 0)
        assert next_run_after(now, time(3, 0)) == datetime(2026, 10, 19, 3, 0)

    def test_crosses_month_boundary(self):
        """Test scheduling rolls over month ends"""
        now = datetime(2026, 10, 31, 23, 59)
        assert next_run_after(now, time(3, 0)) == datetime(2026, 11, 1, 3, 0)


class TestPrune:

    def test_prune_uses_retention_window(self):
        """Test prune deletes with the configured age"""
        store = make_store(deleted=7)
        scheduler = RetentionScheduler(store, retention_days=30)

        assert scheduler.prune() == 7
        store.delete_older_than.assert_called_once_with(timedelta(days=30))

    def test_prune_against_real_store(self, store, clock):
        """Test prune removes expired samples from a real store"""
        machine_id = store.upsert_machine('web-01', '', '', '')
        for days_ago in (10, 50, 100, 200):
            store.insert_sample(machine_id, Sample(
                cpu_percent=1.0, memory_percent=1.0, disk_percent=1.0,
                collected_at=clock.current - timedelta(days=days_ago)
            ))

        assert RetentionScheduler(store, retention_days=90).prune() == 2

    def test_prune_async_swallows_storage_error(self):
        """Test a storage failure in the async prune is logged, not raised"""
        store = make_store()
        store.delete_older_than.side_effect = StorageError('delete_older_than', 'database is locked')
        scheduler = RetentionScheduler(store)

        assert asyncio.run(scheduler.prune_async()) is None

    def test_seconds_until_next_run_uses_clock(self):
        """Test the sleep length comes from the injected clock"""
        scheduler = RetentionScheduler(
            make_store(), run_at=time(3, 0), clock=lambda: datetime(2026, 10, 18, 2, 0)
        )
        assert scheduler.seconds_until_next_run() == 3600.0


class TestSchedulerLoop:
    """Test start/stop of the background task"""

    def test_prunes_on_start_and_on_each_tick(self):
        """Test a pass runs at start and after each wait"""
        store = make_store()
        scheduler = RetentionScheduler(store, grace_seconds=1.0)

        async def scenario():
            with patch.object(scheduler, 'seconds_until_next_run', return_value=0.01):
                scheduler.start()
                await asyncio.sleep(0.2)
                await scheduler.stop()

        asyncio.run(scenario())

        assert store.delete_older_than.call_count >= 3
        assert scheduler.running is False

    def test_no_prune_on_start_when_disabled(self):
        """Test start-up pruning can be switched off"""
        store = make_store()
        scheduler = RetentionScheduler(store, prune_on_start=False)

        async def scenario():
            with patch.object(scheduler, 'seconds_until_next_run', return_value=3600.0):
                scheduler.start()
                await asyncio.sleep(0.05)
                await scheduler.stop()

        asyncio.run(scenario())

        store.delete_older_than.assert_not_called()

    def test_stop_interrupts_long_sleep(self):
        """Test stop wakes the loop without waiting for 03:00"""
        store = make_store()
        scheduler = RetentionScheduler(store, grace_seconds=2.0)

        async def scenario():
            with patch.object(scheduler, 'seconds_until_next_run', return_value=86400.0):
                scheduler.start()
                await asyncio.sleep(0.05)
                await asyncio.wait_for(scheduler.stop(), timeout=1.0)

        asyncio.run(scenario())

        assert store.delete_older_than.call_count == 1
        assert scheduler.running is False

    def test_start_failure_is_not_fatal(self):
        """A failed pass is logged and the loop keeps running"""
        calls = []

        def flaky_delete(age):
            calls.append(age)
            if len(calls) == 1:
                raise StorageError('delete_older_than', 'database is locked')
            return 4

        store = make_store()
        store.delete_older_than.side_effect = flaky_delete
        scheduler = RetentionScheduler(store, grace_seconds=1.0)

        async def scenario():
            with patch.object(scheduler, 'seconds_until_next_run', return_value=0.01):
                task = scheduler.start()
                await asyncio.sleep(0.1)
                assert not task.done()
                await scheduler.stop()

        asyncio.run(scenario())

        assert len(calls) >= 2

    def test_stop_without_start_is_noop(self):
        """Test stop before start does nothing"""
        asyncio.run(RetentionScheduler(make_store()).stop())
