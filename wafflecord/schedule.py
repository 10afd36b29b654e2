"""
Weekly trigger computation and the wait/fire loop.

The loop recomputes the next firing from the current time after every
firing instead of adding seven days to the previous one, so wall-clock
time stays fixed across UTC offset changes (DST) and slow actions.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable

import structlog

from .metrics import MetricsCollector

log = structlog.get_logger()

# Longest single sleep; the remaining wait is re-measured after each one
MAX_SLEEP_SECONDS = 3600.0
# A firing never repeats within this gap of the previous one
MIN_FIRING_GAP = timedelta(seconds=1)

WEEKDAY_NAMES = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)

Action = Callable[[], "Awaitable[Any] | Any"]
Clock = Callable[[], datetime]
Sleeper = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class WeeklyTrigger:
    """A wall-clock instant that recurs once a week in a timezone."""
    weekday: int  # 0 = Monday
    hour: int
    minute: int
    second: int
    tz: tzinfo

    def __post_init__(self) -> None:
        if not 0 <= self.weekday <= 6:
            raise ValueError(f"weekday must be 0..6, got {self.weekday}")
        if not 0 <= self.hour <= 23:
            raise ValueError(f"hour must be 0..23, got {self.hour}")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"minute must be 0..59, got {self.minute}")
        if not 0 <= self.second <= 59:
            raise ValueError(f"second must be 0..59, got {self.second}")

    @property
    def wall_time(self) -> time:
        return time(self.hour, self.minute, self.second)

    def at_date(self, day: date) -> datetime:
        return datetime.combine(day, self.wall_time, tzinfo=self.tz)

    def describe(self) -> str:
        return f"{WEEKDAY_NAMES[self.weekday]} {self.wall_time.isoformat()} {self.tz}"


def next_occurrence(now: datetime, trigger: WeeklyTrigger) -> datetime:
    """
    Return the earliest instant at or after `now` matching the trigger.

    The result is expressed in the trigger's timezone. An exact match
    returns `now` itself; a time already passed this week rolls over to the
    same weekday of the following week.
    """
    if now.tzinfo is None or now.utcoffset() is None:
        raise ValueError("now must be timezone-aware")

    local_now = now.astimezone(trigger.tz)
    days_ahead = (trigger.weekday - local_now.weekday()) % 7
    candidate = trigger.at_date(local_now.date() + timedelta(days=days_ahead))
    # Compare in UTC: same-tzinfo comparisons use wall time and ignore fold
    if candidate.astimezone(timezone.utc) < now.astimezone(timezone.utc):
        candidate = trigger.at_date(local_now.date() + timedelta(days=days_ahead + 7))
    return candidate


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerClock:
    """Waits for each occurrence of a WeeklyTrigger and runs an action."""

    def __init__(
        self,
        trigger: WeeklyTrigger,
        now: Clock = _utcnow,
        sleep: Sleeper = asyncio.sleep,
        metrics: MetricsCollector | None = None,
    ):
        self._trigger = trigger
        self._now = now
        self._sleep = sleep
        self._metrics = metrics
        self._next_fire_at: datetime | None = None
        self._last_fired_at: datetime | None = None
        self._firings = 0

    @property
    def trigger(self) -> WeeklyTrigger:
        return self._trigger

    @property
    def next_fire_at(self) -> datetime | None:
        return self._next_fire_at

    @property
    def last_fired_at(self) -> datetime | None:
        return self._last_fired_at

    @property
    def firings(self) -> int:
        return self._firings

    def next_occurrence(self) -> datetime:
        now = self._now().astimezone(timezone.utc)
        if self._last_fired_at is not None:
            now = max(now, self._last_fired_at.astimezone(timezone.utc) + MIN_FIRING_GAP)
        return next_occurrence(now, self._trigger)

    async def run(self, action: Action) -> None:
        """Fire `action` at every occurrence, forever. Cancel the task to stop."""
        log.info("clock.started", trigger=self._trigger.describe())
        while True:
            target = self.next_occurrence()
            self._next_fire_at = target
            if self._metrics:
                self._metrics.set_gauge("next_firing_timestamp", target.timestamp())
            log.info("clock.scheduled", fire_at=target.isoformat())

            await self._wait_until(target)

            self._last_fired_at = target
            self._firings += 1
            if self._metrics:
                self._metrics.inc("firings_total")
            log.info("clock.firing", fire_at=target.isoformat(), firing=self._firings)

            try:
                result = action()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                if self._metrics:
                    self._metrics.inc("firing_failures_total")
                log.exception("clock.action_failed", fire_at=target.isoformat())

    async def _wait_until(self, target: datetime) -> None:
        target_utc = target.astimezone(timezone.utc)
        while True:
            remaining = (target_utc - self._now().astimezone(timezone.utc)).total_seconds()
            if remaining <= 0:
                return
            await self._sleep(min(remaining, MAX_SLEEP_SECONDS))
