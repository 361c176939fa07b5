"""Fire jobs when their schedules come due.

One loop owns every schedule and is the only caller of Schedule.next.
Each firing runs on its own task so a slow device never delays the others.
"""

import asyncio
import datetime
import logging
from typing import Callable, List, Optional, Set

from .const import DISPATCH_MAX_SLEEP, NEVER_TIME
from .job import Job
from .schedule import Schedule, SolarSchedule

_LOGGER = logging.getLogger(__name__)


class DispatchEntry:
    def __init__(self, job: Job, schedule: Schedule) -> None:
        self.job = job
        self.schedule = schedule
        self.next: datetime.datetime = NEVER_TIME

    def __repr__(self) -> str:
        return f"<DispatchEntry {self.job} next={self.next.isoformat()}>"


class Dispatcher:
    """Cooperative scheduler for a set of jobs."""

    def __init__(
        self,
        tzinfo: Optional[datetime.tzinfo] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self.tzinfo = tzinfo
        self._clock = clock
        self.entries: List[DispatchEntry] = []
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._runner: Optional["asyncio.Task[None]"] = None

    def now(self) -> datetime.datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.datetime.now(self.tzinfo).astimezone(self.tzinfo)

    def add_job(self, job: Job) -> DispatchEntry:
        entry = DispatchEntry(job, job.schedule)
        self.entries.append(entry)
        if self._runner is not None:
            entry.next = entry.schedule.next(self.now())
        return entry

    def fire(self, job: Job) -> "asyncio.Task[None]":
        """Start a job on its own task."""
        task = asyncio.create_task(job.async_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def run_missed(self) -> int:
        """Fire solar jobs whose trigger already passed today."""
        now = self.now()
        fired = 0
        for entry in self.entries:
            schedule = entry.schedule
            if isinstance(schedule, SolarSchedule) and schedule.passed_today(now):
                _LOGGER.info("%s: trigger already passed today, running now", entry.job)
                self.fire(entry.job)
                fired += 1
        return fired

    def start(self) -> None:
        now = self.now()
        for entry in self.entries:
            entry.next = entry.schedule.next(now)
        self._runner = asyncio.create_task(self._async_run())

    async def async_stop(self) -> None:
        """Stop dispatching and wait for running jobs."""
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def dispatch_due(self, now: datetime.datetime) -> float:
        """Fire every entry due at now and return seconds until the next one."""
        active = [entry for entry in self.entries if entry.next != NEVER_TIME]
        for entry in active:
            if entry.next > now:
                continue
            if entry.schedule.pending_retry:
                _LOGGER.debug("%s: re-polling schedule", entry.job)
            else:
                self.fire(entry.job)
            entry.next = entry.schedule.next(now)

        pending = [entry.next for entry in active if entry.next != NEVER_TIME]
        if not pending:
            return DISPATCH_MAX_SLEEP
        delay = (min(pending) - now).total_seconds()
        return max(0.0, min(delay, DISPATCH_MAX_SLEEP))

    async def _async_run(self) -> None:
        while True:
            await asyncio.sleep(self.dispatch_due(self.now()))
