"""
NSE/BSE trading calendar.

``MarketCalendar`` is a pure decision object over a holiday table.
``MarketCalendarService`` loads that table from the database, seeds it and
serves the cached market-status payload used by the API and WebSocket.
"""
from __future__ import annotations

import time as monotonic_time
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import select

from navpulse.core.clock import Clock, system_clock, to_naive_utc
from navpulse.core.logging_config import get_main_logger
from navpulse.db.database import dialect_insert
from navpulse.db.models import MarketHoliday
from navpulse.services.models import MarketStatus

logger = get_main_logger()

MAX_LOOKAHEAD_DAYS = 15
WEEKEND = (5, 6)  # Saturday, Sunday

HOLIDAYS_2026 = [
    ("2026-01-26", "Republic Day"),
    ("2026-03-03", "Mahashivratri"),
    ("2026-03-11", "Holi"),
    ("2026-03-30", "Ram Navami"),
    ("2026-04-02", "Mahavir Jayanti"),
    ("2026-04-03", "Good Friday"),
    ("2026-04-06", "Id-Ul-Fitr (Ramadan Eid)"),
    ("2026-04-14", "Dr. Baba Saheb Ambedkar Jayanti"),
    ("2026-05-01", "Maharashtra Day"),
    ("2026-06-15", "Id-Ul-Adha (Bakri Eid)"),
    ("2026-07-06", "Muharram"),
    ("2026-08-15", "Independence Day"),
    ("2026-08-27", "Janmashtami"),
    ("2026-09-05", "Ganesh Chaturthi"),
    ("2026-10-02", "Gandhi Jayanti"),
    ("2026-10-20", "Dussehra"),
    ("2026-10-24", "Milad-Un-Nabi"),
    ("2026-11-09", "Diwali"),
    ("2026-11-10", "Diwali (Balipratipada)"),
    ("2026-11-24", "Gurunanak Jayanti"),
    ("2026-12-25", "Christmas"),
]


class CalendarError(Exception):
    """The holiday table has no trading day within the lookahead window."""


def parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":")
    return time(int(hours), int(minutes))


@dataclass(frozen=True)
class CalendarEntry:
    """One dated row of the holiday table."""
    date: date
    is_holiday: bool = True
    holiday_name: Optional[str] = None
    market_open: Optional[time] = None
    market_close: Optional[time] = None


class MarketCalendar:
    """
    Answers "is the market open" for a fixed holiday table.

    All wall-clock comparisons happen in the exchange timezone. Naive
    datetimes are taken to be UTC.
    """

    def __init__(
        self,
        entries: Iterable[CalendarEntry] = (),
        tz: str = "Asia/Kolkata",
        market_open: time = time(9, 15),
        market_close: time = time(15, 30),
    ):
        self.entries: Dict[date, CalendarEntry] = {entry.date: entry for entry in entries}
        self.tz = ZoneInfo(tz)
        self.market_open = market_open
        self.market_close = market_close

    def local(self, moment: datetime) -> datetime:
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment.astimezone(self.tz)

    def local_date(self, moment: datetime) -> date:
        return self.local(moment).date()

    def is_holiday(self, day: date) -> bool:
        entry = self.entries.get(day)
        return entry is not None and entry.is_holiday

    def is_trading_day(self, day: date) -> bool:
        return day.weekday() not in WEEKEND and not self.is_holiday(day)

    def session_window(self, day: date) -> tuple[time, time]:
        entry = self.entries.get(day)
        open_at = entry.market_open if entry and entry.market_open else self.market_open
        close_at = entry.market_close if entry and entry.market_close else self.market_close
        return open_at, close_at

    def is_market_open(self, now: datetime) -> MarketStatus:
        local_now = self.local(now)
        day = local_now.date()

        if day.weekday() in WEEKEND:
            return MarketStatus(is_open=False, reason="Weekend")

        entry = self.entries.get(day)
        if entry is not None and entry.is_holiday:
            return MarketStatus(is_open=False, reason=entry.holiday_name or "Market Holiday")

        # Minute resolution: the whole closing minute still counts as open
        wall_clock = local_now.time().replace(second=0, microsecond=0)
        open_at, close_at = self.session_window(day)
        if wall_clock < open_at:
            return MarketStatus(is_open=False, reason="Market not yet opened")
        if wall_clock > close_at:
            return MarketStatus(is_open=False, reason="Market closed for the day")
        return MarketStatus(is_open=True)

    def next_trading_day(self, from_day: date) -> date:
        """First trading day strictly after ``from_day``."""
        day = from_day
        for _ in range(MAX_LOOKAHEAD_DAYS):
            day = day + timedelta(days=1)
            if self.is_trading_day(day):
                return day
        raise CalendarError(f"No trading day within {MAX_LOOKAHEAD_DAYS} days after {from_day.isoformat()}")


class MarketCalendarService:
    """Database-backed calendar with a short in-process reload interval."""

    STATUS_CACHE_KEY = "market:status"

    def __init__(
        self,
        session_factory,
        cache=None,
        clock: Clock = system_clock,
        tz: str = "Asia/Kolkata",
        market_open: str = "09:15",
        market_close: str = "15:30",
        status_ttl_seconds: int = 60,
        reload_seconds: float = 300.0,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._clock = clock
        self._tz = tz
        self._market_open = parse_hhmm(market_open)
        self._market_close = parse_hhmm(market_close)
        self._status_ttl = status_ttl_seconds
        self._reload_seconds = reload_seconds
        self._calendar: Optional[MarketCalendar] = None
        self._loaded_at = 0.0

    def invalidate(self) -> None:
        self._calendar = None

    async def load_calendar(self) -> MarketCalendar:
        now = monotonic_time.monotonic()
        if self._calendar is not None and now - self._loaded_at < self._reload_seconds:
            return self._calendar

        async with self._session_factory() as session:
            result = await session.execute(select(MarketHoliday))
            rows = result.scalars().all()

        entries = [
            CalendarEntry(
                date=row.date,
                is_holiday=row.is_holiday,
                holiday_name=row.holiday_name,
                market_open=parse_hhmm(row.market_open) if row.market_open else None,
                market_close=parse_hhmm(row.market_close) if row.market_close else None,
            )
            for row in rows
        ]
        self._calendar = MarketCalendar(entries, self._tz, self._market_open, self._market_close)
        self._loaded_at = now
        return self._calendar

    async def is_market_open(self, now: Optional[datetime] = None) -> MarketStatus:
        calendar = await self.load_calendar()
        return calendar.is_market_open(now or self._clock())

    async def is_trading_day(self, day: date) -> bool:
        calendar = await self.load_calendar()
        return calendar.is_trading_day(day)

    async def next_trading_day(self, from_day: Optional[date] = None) -> date:
        calendar = await self.load_calendar()
        if from_day is None:
            from_day = calendar.local_date(self._clock())
        return calendar.next_trading_day(from_day)

    async def get_market_status(self) -> dict:
        """
        Market status payload for API and subscribers.

        Served from the tiered cache for a short TTL; the job path calls
        ``is_market_open`` directly and never sees a cached answer.
        """
        if self._cache is not None:
            cached = await self._cache.get(self.STATUS_CACHE_KEY)
            if cached is not None:
                return cached

        calendar = await self.load_calendar()
        now = calendar.local(self._clock())
        status = calendar.is_market_open(now)
        try:
            next_day = calendar.next_trading_day(now.date()).isoformat()
        except CalendarError as e:
            logger.warning(f"Market status without next trading day: {e}")
            next_day = None

        payload = {
            "isOpen": status.is_open,
            "reason": status.reason,
            "currentTime": now.strftime("%d %b %Y, %I:%M %p"),
            "timestamp": now.astimezone(timezone.utc).isoformat(),
            "nextTradingDay": next_day,
        }
        if self._cache is not None:
            await self._cache.set(self.STATUS_CACHE_KEY, payload, self._status_ttl)
        return payload

    async def seed_holidays(self, holidays: List[tuple] = None) -> int:
        """Insert the built-in holiday list; existing dates are left untouched."""
        holidays = HOLIDAYS_2026 if holidays is None else holidays
        if not holidays:
            return 0
        values = [
            {
                "date": date.fromisoformat(day),
                "is_holiday": True,
                "holiday_name": name,
                "exchange": "BOTH",
            }
            for day, name in holidays
        ]
        async with self._session_factory() as session:
            stmt = dialect_insert(session, MarketHoliday).values(values)
            stmt = stmt.on_conflict_do_nothing(index_elements=["date"])
            result = await session.execute(stmt)
            await session.commit()
        self.invalidate()
        inserted = result.rowcount or 0
        logger.info(f"Seeded {inserted} market holidays")
        return inserted

    async def add_holidays(self, holidays: List[dict]) -> int:
        """
        Upsert holidays given as ``{"date": "YYYY-MM-DD", "name": str, "exchange": str}``.

        An existing row for the date becomes a holiday with the new name.
        """
        if not holidays:
            return 0
        now = to_naive_utc(self._clock())
        values = [
            {
                "date": date.fromisoformat(item["date"]),
                "is_holiday": True,
                "holiday_name": item["name"],
                "exchange": item.get("exchange", "BOTH"),
                "updated_at": now,
            }
            for item in holidays
        ]
        async with self._session_factory() as session:
            stmt = dialect_insert(session, MarketHoliday).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["date"],
                set_={
                    "is_holiday": True,
                    "holiday_name": stmt.excluded.holiday_name,
                    "exchange": stmt.excluded.exchange,
                    "updated_at": stmt.excluded.updated_at,
                },
            )
            await session.execute(stmt)
            await session.commit()
        self.invalidate()
        if self._cache is not None:
            await self._cache.delete(self.STATUS_CACHE_KEY)
        return len(values)
