"""
Declarative schedule descriptors.

A schedule only answers "when is the next run after this moment". The
scheduler turns that into sleeps and enqueues.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional
from zoneinfo import ZoneInfo

from navpulse.services.market_calendar import parse_hhmm

WEEKDAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class IntervalSchedule:
    """Fires on wall-clock multiples of ``seconds`` (e.g. :00, :05, :10 for 300)."""

    def __init__(self, seconds: int):
        if seconds <= 0:
            raise ValueError("Interval must be positive")
        self.seconds = seconds

    def next_after(self, moment: datetime) -> datetime:
        ts = _aware(moment).timestamp()
        next_ts = (math.floor(ts / self.seconds) + 1) * self.seconds
        return datetime.fromtimestamp(next_ts, tz=timezone.utc)

    def describe(self) -> str:
        return f"every {self.seconds}s"


class DailySchedule:
    """Fires at a local time of day, optionally only on some weekdays (0=Monday)."""

    def __init__(self, at: str, tz: str = "Asia/Kolkata", weekdays: Optional[Iterable[int]] = None):
        self.at = parse_hhmm(at)
        self.tz = ZoneInfo(tz)
        self.weekdays = frozenset(weekdays) if weekdays is not None else None
        if self.weekdays is not None and (not self.weekdays or not self.weekdays <= set(range(7))):
            raise ValueError(f"Invalid weekdays: {sorted(self.weekdays)}")

    def next_after(self, moment: datetime) -> datetime:
        local = _aware(moment).astimezone(self.tz)
        for offset in range(8):
            day = local.date() + timedelta(days=offset)
            if self.weekdays is not None and day.weekday() not in self.weekdays:
                continue
            candidate = datetime.combine(day, self.at, tzinfo=self.tz)
            if candidate > local:
                return candidate.astimezone(timezone.utc)
        raise RuntimeError("No run time found within a week")

    def describe(self) -> str:
        days = "daily"
        if self.weekdays is not None:
            days = ",".join(WEEKDAY_NAMES[d] for d in sorted(self.weekdays))
        return f"{days} at {self.at.strftime('%H:%M')} {self.tz.key}"
