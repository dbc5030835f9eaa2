"""Test the periodic job scheduler."""

import asyncio

import pytest

from eventcore.infrastructure.scheduler import Scheduler


class TestScheduler:
    async def test_job_runs_periodically(self, manual_clock):
        scheduler = Scheduler(clock=manual_clock)
        calls = []

        async def tick():
            calls.append(1)

        scheduler.add_job("tick", 0.01, tick)
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()

        [job] = scheduler.jobs
        assert job.runs >= 1
        assert job.runs == len(calls)
        assert job.last_run_at == manual_clock.now()
        assert job.task is None

    async def test_zero_interval_never_started(self):
        scheduler = Scheduler()

        async def tick():
            raise AssertionError("should not run")

        job = scheduler.add_job("off", 0, tick)
        await scheduler.start()
        assert job.task is None
        await scheduler.stop()

    async def test_duplicate_name_rejected(self):
        scheduler = Scheduler()

        async def tick():
            pass

        scheduler.add_job("tick", 1, tick)
        with pytest.raises(ValueError, match="already scheduled"):
            scheduler.add_job("tick", 1, tick)

    async def test_failures_are_counted_not_raised(self):
        scheduler = Scheduler()

        async def broken():
            raise RuntimeError("disk full")

        job = scheduler.add_job("broken", 0, broken)
        await scheduler.run_now("broken")
        await scheduler.run_now("broken")
        assert job.errors == 2
        assert job.runs == 0
        assert job.last_error == "disk full"

    async def test_job_added_while_running_is_launched(self):
        scheduler = Scheduler()
        await scheduler.start()
        assert scheduler.is_running

        async def tick():
            pass

        job = scheduler.add_job("late", 10, tick)
        assert job.task is not None
        await scheduler.stop()
        assert not scheduler.is_running
