"""Schedules consumed by the dispatcher.

A schedule answers a single question: given the current instant, when
should its job fire next. Solar schedules follow sunrise or sunset plus a
signed offset; cron schedules follow a standard cron expression.
"""

from abc import abstractmethod
import datetime
from enum import Enum
import logging
from typing import Optional

from croniter import croniter

from .const import (
    NEVER_TIME,
    ORACLE_RETRY_DELAY,
    ORACLE_RETRY_LIMIT,
    SCHEDULE_SUNRISE,
    SCHEDULE_SUNSET,
)
from .solar import Location, SolarEvent, SolarOracle
from .utils import format_duration, parse_duration

_LOGGER = logging.getLogger(__name__)

ONE_DAY = datetime.timedelta(days=1)


class ScheduleState(Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DISABLED = "disabled"


class Schedule:
    """Something that knows when a job should run next."""

    @abstractmethod
    def next(self, now: datetime.datetime) -> datetime.datetime:
        """Return the next trigger after now, or NEVER_TIME."""

    @property
    def pending_retry(self) -> bool:
        """True when the last instant returned by next is only a re-poll."""
        return False


class SolarSchedule(Schedule):
    """Fire once a day at sunrise or sunset plus an offset.

    Oracle failures are retried one minute later. After retry_limit
    consecutive failures the schedule disables itself and returns
    NEVER_TIME until the process restarts.
    """

    def __init__(
        self,
        location: Location,
        event: SolarEvent,
        offset: datetime.timedelta,
        oracle: SolarOracle,
        retry_limit: int = ORACLE_RETRY_LIMIT,
    ) -> None:
        self.location = location
        self.event = event
        self.offset = offset
        self.oracle = oracle
        self.retry_limit = retry_limit
        self.failure_count = 0

    def __str__(self) -> str:
        if not self.offset:
            return f"@{self.event.value}"
        return f"@{self.event.value} {format_duration(self.offset)}"

    @property
    def state(self) -> ScheduleState:
        if self.failure_count == 0:
            return ScheduleState.HEALTHY
        if self.failure_count < self.retry_limit:
            return ScheduleState.DEGRADED
        return ScheduleState.DISABLED

    @property
    def pending_retry(self) -> bool:
        return self.failure_count > 0

    def _trigger(self, when: datetime.datetime) -> datetime.datetime:
        events = self.oracle.get_solar_events(self.location, when)
        return events.get(self.event) + self.offset

    def next(self, now: datetime.datetime) -> datetime.datetime:
        if now.tzinfo is None:
            now = now.astimezone()
        if self.state is ScheduleState.DISABLED:
            return NEVER_TIME

        # Earlier dates cannot yield a trigger after now
        when = now - self.offset
        try:
            trigger = self._trigger(when)
            while trigger <= now:
                when += ONE_DAY
                trigger = self._trigger(when)
        except Exception as ex:  # pylint: disable=broad-except
            return self._failed(now, ex)

        self.failure_count = 0
        _LOGGER.info("%s: next trigger at %s", self, trigger.isoformat())
        return trigger

    def _failed(self, now: datetime.datetime, ex: Exception) -> datetime.datetime:
        if self.failure_count >= self.retry_limit:
            return NEVER_TIME
        self.failure_count += 1
        _LOGGER.warning(
            "%s: get %s failed (%s/%s): %s",
            self,
            self.event.value,
            self.failure_count,
            self.retry_limit,
            ex,
        )
        if self.failure_count >= self.retry_limit:
            _LOGGER.error(
                "%s: disabled after %s consecutive failures; restart to re-enable",
                self,
                self.failure_count,
            )
        return now + ORACLE_RETRY_DELAY

    def passed_today(self, now: datetime.datetime) -> bool:
        """Return True if a trigger fell on today's date at or before now."""
        if now.tzinfo is None:
            now = now.astimezone()
        when = now - self.offset
        try:
            trigger = self._trigger(when)
            if trigger > now:
                trigger = self._trigger(when - ONE_DAY)
        except Exception as ex:  # pylint: disable=broad-except
            _LOGGER.warning("%s: cannot determine today's trigger: %s", self, ex)
            return False
        return trigger.astimezone(now.tzinfo).date() == now.date()


class CronSchedule(Schedule):
    """Fire on a standard five or six field cron expression."""

    def __init__(self, expression: str) -> None:
        if not croniter.is_valid(expression):
            raise ValueError(f"invalid cron expression {expression!r}")
        self.expression = expression

    def __str__(self) -> str:
        return self.expression

    def next(self, now: datetime.datetime) -> datetime.datetime:
        if now.tzinfo is None:
            now = now.astimezone()
        trigger: datetime.datetime = croniter(self.expression, now).get_next(
            datetime.datetime
        )
        return trigger


def _solar_event(expression: str) -> Optional[SolarEvent]:
    for prefix, event in (
        (SCHEDULE_SUNRISE, SolarEvent.SUNRISE),
        (SCHEDULE_SUNSET, SolarEvent.SUNSET),
    ):
        if expression == prefix or expression.startswith(prefix + " "):
            return event
    return None


def parse_schedule(
    expression: str, location: Location, oracle: SolarOracle
) -> Schedule:
    """Parse "@sunrise", "@sunset -1h" style or cron expressions."""
    expression = expression.strip()
    event = _solar_event(expression)
    if event is None:
        return CronSchedule(expression)

    remainder = expression[len(event.value) + 1 :].strip()
    offset = parse_duration(remainder) if remainder else datetime.timedelta(0)
    return SolarSchedule(location, event, offset, oracle)
