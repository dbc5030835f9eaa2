"""Periodic background jobs owned by the engine lifecycle.

Each job runs in its own task: ``await job()``, sleep ``interval``,
repeat.  A failing run is logged and counted; the loop keeps going.
``stop()`` cancels every task and waits for them to finish.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from eventcore.core.clock import IClock, WallClock

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    name: str
    interval: float
    func: Callable[[], Awaitable[Any]]
    runs: int = 0
    errors: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None
    task: asyncio.Task | None = field(default=None, repr=False)


class Scheduler:
    def __init__(self, *, clock: IClock | None = None) -> None:
        self._clock = clock or WallClock()
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def jobs(self) -> list[ScheduledJob]:
        return list(self._jobs.values())

    def add_job(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
    ) -> ScheduledJob:
        """Register a job.  Jobs with ``interval <= 0`` are never started."""
        if name in self._jobs:
            raise ValueError(f"Job {name!r} already scheduled")
        job = ScheduledJob(name=name, interval=interval, func=func)
        self._jobs[name] = job
        if self._running:
            self._launch(job)
        return job

    async def start(self) -> None:
        if self._running:
            logger.warning("Scheduler is already running")
            return
        self._running = True
        for job in self._jobs.values():
            self._launch(job)
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        self._running = False
        for job in self._jobs.values():
            if job.task is None:
                continue
            job.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await job.task
            job.task = None
        logger.info("Scheduler stopped")

    async def run_now(self, name: str) -> None:
        """Run one job immediately, outside its loop."""
        await self._run_once(self._jobs[name])

    def _launch(self, job: ScheduledJob) -> None:
        if job.interval <= 0:
            return
        job.task = asyncio.create_task(self._loop(job), name=f"job-{job.name}")

    async def _loop(self, job: ScheduledJob) -> None:
        while self._running:
            await asyncio.sleep(job.interval)
            await self._run_once(job)

    async def _run_once(self, job: ScheduledJob) -> None:
        try:
            await job.func()
            job.runs += 1
            job.last_run_at = self._clock.now()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            job.errors += 1
            job.last_error = str(exc)
            logger.exception(
                "Scheduled job %s failed (errors=%d)", job.name, job.errors,
            )
