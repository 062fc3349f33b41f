from __future__ import annotations

import asyncio
import logging
import traceback
from datetime import datetime, time, timedelta
from typing import Awaitable, Callable, Iterable, List, Optional
from zoneinfo import ZoneInfo

from marketfeed.market.clock import Clock, SystemClock

log = logging.getLogger("scheduler")

JobCallback = Callable[[], Awaitable[object]]


class Job:
    """A named periodic callback. Subclasses decide when it is next due."""

    def __init__(self, name: str, callback: JobCallback) -> None:
        self.name = name
        self.callback = callback
        self.runs = 0
        self.failures = 0
        self.next_run: Optional[datetime] = None

    def first_run(self, now: datetime) -> datetime:
        raise NotImplementedError

    def following_run(self, previous: datetime, now: datetime) -> datetime:
        raise NotImplementedError


class IntervalJob(Job):
    """
    Fixed-rate job: runs are anchored to the first run, not to when the
    previous run finished. A run that overruns its slot skips the missed
    slots instead of firing them back to back.
    """

    def __init__(
        self,
        name: str,
        callback: JobCallback,
        interval: timedelta,
        run_immediately: bool = True,
    ) -> None:
        if interval <= timedelta(0):
            raise ValueError("interval must be positive")
        super().__init__(name, callback)
        self.interval = interval
        self.run_immediately = run_immediately

    def first_run(self, now: datetime) -> datetime:
        return now if self.run_immediately else now + self.interval

    def following_run(self, previous: datetime, now: datetime) -> datetime:
        nxt = previous + self.interval
        while nxt <= now:
            nxt += self.interval
        return nxt


class DailyJob(Job):
    """Runs once a day at a wall-clock time in `tz`, on the given weekdays."""

    def __init__(
        self,
        name: str,
        callback: JobCallback,
        at: time,
        tz: ZoneInfo,
        weekdays: Iterable[int] = range(0, 5),
    ) -> None:
        super().__init__(name, callback)
        self.at = at
        self.tz = tz
        self.weekdays = frozenset(weekdays)
        if not self.weekdays:
            raise ValueError("weekdays must not be empty")

    def _next_after(self, now: datetime) -> datetime:
        local = now.astimezone(self.tz)
        candidate = local.replace(hour=self.at.hour, minute=self.at.minute, second=0, microsecond=0)
        if candidate <= local:
            candidate += timedelta(days=1)
        while candidate.weekday() not in self.weekdays:
            candidate += timedelta(days=1)
        return candidate

    def first_run(self, now: datetime) -> datetime:
        return self._next_after(now)

    def following_run(self, previous: datetime, now: datetime) -> datetime:
        return self._next_after(max(previous, now))


class Scheduler:
    """
    Runs each registered job in its own asyncio task.

    Time comes from the injected Clock so tests can drive schedules with a
    ManualClock. A job that raises is logged and rescheduled; the loop
    never dies on a job error.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self.jobs: List[Job] = []
        self._tasks: List[asyncio.Task] = []

    def add(self, job: Job) -> Job:
        if any(j.name == job.name for j in self.jobs):
            raise ValueError(f"duplicate job name: {job.name}")
        self.jobs.append(job)
        return job

    def every(
        self,
        interval: timedelta,
        callback: JobCallback,
        name: str,
        run_immediately: bool = True,
    ) -> IntervalJob:
        return self.add(IntervalJob(name, callback, interval, run_immediately))

    def daily_at(
        self,
        at: time,
        callback: JobCallback,
        name: str,
        tz: ZoneInfo,
        weekdays: Iterable[int] = range(0, 5),
    ) -> DailyJob:
        return self.add(DailyJob(name, callback, at, tz, weekdays))

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [asyncio.create_task(self.run(job), name=f"job:{job.name}") for job in self.jobs]
        log.info("Scheduler started jobs=%s", [j.name for j in self.jobs])

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        log.info("Scheduler stopped")

    async def run(self, job: Job, max_runs: Optional[int] = None) -> None:
        """Loop for one job. `max_runs` bounds the loop (tests, one-off runs)."""
        job.next_run = job.first_run(self._clock.now())

        while max_runs is None or job.runs < max_runs:
            delay = (job.next_run - self._clock.now()).total_seconds()
            if delay > 0:
                await self._clock.sleep(delay)

            scheduled = job.next_run
            try:
                await job.callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                job.failures += 1
                log.error("Job failed name=%s error=%s", job.name, repr(e))
                log.error(traceback.format_exc())
            job.runs += 1

            job.next_run = job.following_run(scheduled, self._clock.now())
            log.debug("Job rescheduled name=%s next_run=%s", job.name, job.next_run.isoformat())
