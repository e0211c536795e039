"""
Unit tests for the periodic drivers.
"""

import asyncio
import threading
import time

import pytest

from clearhouse.core.config import SettlementConfig
from clearhouse.core.scheduler import PeriodicTask, SettlementScheduler


def run_for(task: PeriodicTask, seconds: float) -> None:
    async def main():
        await task.start()
        await asyncio.sleep(seconds)
        await task.stop()

    asyncio.run(main())


class TestPeriodicTask:
    """Tests for tick cadence and isolation."""

    def test_ticks_immediately(self):
        calls = []
        task = PeriodicTask("t", 10.0, lambda: calls.append(1))
        run_for(task, 0.05)
        assert calls == [1]

    def test_ticks_on_interval(self):
        calls = []
        task = PeriodicTask("t", 0.05, lambda: calls.append(1))
        run_for(task, 0.32)
        assert 4 <= len(calls) <= 8

    def test_exception_does_not_stop_task(self):
        def boom():
            raise RuntimeError("pass failed")

        task = PeriodicTask("t", 0.05, boom)
        run_for(task, 0.22)
        assert task.ticks >= 3
        assert task.failures == task.ticks

    def test_slow_pass_does_not_delay_next_tick(self):
        """Passes overlap rather than pushing back the schedule."""
        release = threading.Event()
        started = []

        def slow():
            started.append(time.monotonic())
            release.wait(2)

        async def main():
            task = PeriodicTask("t", 0.05, slow)
            await task.start()
            await asyncio.sleep(0.18)
            release.set()
            await task.stop()

        asyncio.run(main())
        assert len(started) >= 3

    def test_rejects_bad_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("t", 0, lambda: None)


class FakeService:
    def __init__(self, fail_matured=False):
        self.config = SettlementConfig(auction_interval_seconds=10, maturity_interval_seconds=10)
        self.fail_matured = fail_matured
        self.calls = []

    def process_expired_auctions(self):
        self.calls.append("auctions")
        return 0

    def process_matured_claims(self):
        self.calls.append("matured")
        if self.fail_matured:
            raise RuntimeError("store down")
        return 1

    def mark_overdue_payments(self):
        self.calls.append("overdue")
        return 2


class TestSettlementScheduler:
    """Tests for the auction and maturity drivers."""

    def test_both_tasks_tick_at_start(self):
        service = FakeService()
        scheduler = SettlementScheduler(service)

        async def main():
            await scheduler.start()
            await asyncio.sleep(0.1)
            await scheduler.stop()

        asyncio.run(main())
        assert sorted(service.calls) == ["auctions", "matured", "overdue"]

    def test_maturity_steps_are_isolated(self):
        service = FakeService(fail_matured=True)
        scheduler = SettlementScheduler(service)

        result = scheduler.maturity_pass()
        assert result == {"matured": None, "overdue": 2}
        assert service.calls == ["matured", "overdue"]
