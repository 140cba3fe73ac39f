"""
app/core/triggers.py
When should the next refresh happen?
  • IntervalTrigger → fixed period (default 5 min)
  • CronTrigger     → crontab expression, evaluated by APScheduler
The scheduler only calls next_fire_time(); it never knows which one it has.
"""

import abc
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.triggers.cron import CronTrigger as _APSCronTrigger

from app.core.config import UTC, Settings


class PeriodicTrigger(abc.ABC):
    @abc.abstractmethod
    def next_fire_time(self, previous: Optional[datetime], now: datetime) -> datetime:
        """First fire time strictly after `previous` and not before `now`."""


class IntervalTrigger(PeriodicTrigger):
    def __init__(self, interval_s: float):
        if interval_s <= 0:
            raise ValueError("interval must be positive")
        self.interval = timedelta(seconds=interval_s)

    def next_fire_time(self, previous: Optional[datetime], now: datetime) -> datetime:
        nxt = (previous or now) + self.interval
        # a tick that was missed fires once, right away; it is never queued
        return max(nxt, now)

    def __repr__(self) -> str:
        return f"IntervalTrigger({self.interval.total_seconds():g}s)"


class CronTrigger(PeriodicTrigger):
    def __init__(self, expression: str):
        self.expression = expression
        self._cron = _APSCronTrigger.from_crontab(expression, timezone=UTC)

    def next_fire_time(self, previous: Optional[datetime], now: datetime) -> datetime:
        after = now
        if previous is not None and previous >= now:
            after = previous + timedelta(seconds=1)
        return self._cron.get_next_fire_time(None, after)

    def __repr__(self) -> str:
        return f"CronTrigger('{self.expression}')"


def trigger_from_settings(settings: Settings) -> PeriodicTrigger:
    if settings.refresh_cron:
        return CronTrigger(settings.refresh_cron)
    return IntervalTrigger(settings.refresh_interval_s)
