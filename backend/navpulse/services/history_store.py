"""
Time-series stores: index history points and daily fund NAVs.

Both carry a row-level ``expires_at``. Every read filters on it, so an
expired row is invisible even before the maintenance sweep deletes it.
Writes are upserts on the natural key so a retried job never duplicates
a point.
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import and_, delete, or_, select

from navpulse.core.clock import Clock, system_clock, to_naive_utc, years_ago, years_after
from navpulse.core.logging_config import get_main_logger
from navpulse.db.database import dialect_insert
from navpulse.db.models import IndexHistoryPoint, NavRecord
from navpulse.services.models import DAILY, GRANULARITIES, INTRADAY, IndexQuote, NavEntry

logger = get_main_logger()

NAV_UPSERT_CHUNK = 500


def _live(model, now: datetime):
    return or_(model.expires_at.is_(None), model.expires_at > now)


class IndexHistoryStore:
    """
    Index time series in two granularities.

    Intraday points are keyed by fetch time and expire after the retention
    window. Daily points are keyed by the exchange-local date (timestamp at
    midnight of that date), are overwritten through the day by the latest
    value, and never expire.
    """

    def __init__(
        self,
        session_factory,
        clock: Clock = system_clock,
        tz: str = "Asia/Kolkata",
        intraday_retention_days: int = 7,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._tz = ZoneInfo(tz)
        self._retention = timedelta(days=intraday_retention_days)

    def _now(self) -> datetime:
        return to_naive_utc(self._clock())

    def _local_date(self, moment: datetime) -> date:
        return moment.replace(tzinfo=timezone.utc).astimezone(self._tz).date()

    def _point(self, quote: IndexQuote, granularity: str) -> dict:
        fetched_at = to_naive_utc(quote.fetched_at) if quote.fetched_at else self._now()
        day = self._local_date(fetched_at)
        if granularity == DAILY:
            timestamp = datetime.combine(day, time())
            expires_at = None
        else:
            timestamp = fetched_at
            expires_at = fetched_at + self._retention
        return {
            "symbol": quote.symbol,
            "timestamp": timestamp,
            "date": day,
            "granularity": granularity,
            "value": quote.value,
            "change": quote.change,
            "percent_change": quote.percent_change,
            "open": quote.open,
            "high": quote.high,
            "low": quote.low,
            "close": quote.value,
            "expires_at": expires_at,
        }

    async def append(
        self,
        quotes: Iterable[IndexQuote],
        granularities: Sequence[str] = GRANULARITIES,
    ) -> int:
        """Upsert one point per quote and granularity. Returns points written."""
        for granularity in granularities:
            if granularity not in GRANULARITIES:
                raise ValueError(f"Unknown granularity: {granularity}")

        # One statement cannot touch the same key twice; the last quote wins
        points = {}
        for q in quotes:
            for g in granularities:
                point = self._point(q, g)
                points[(point["symbol"], point["timestamp"], g)] = point
        values = list(points.values())
        if not values:
            return 0

        async with self._session_factory() as session:
            stmt = dialect_insert(session, IndexHistoryPoint).values(values)
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=["symbol", "timestamp", "granularity"],
                set_={
                    "value": excluded.value,
                    "change": excluded.change,
                    "percent_change": excluded.percent_change,
                    "open": excluded.open,
                    "high": excluded.high,
                    "low": excluded.low,
                    "close": excluded.close,
                    "expires_at": excluded.expires_at,
                },
            )
            await session.execute(stmt)
            await session.commit()
        return len(values)

    async def latest(self, symbol: str, granularity: str = INTRADAY) -> Optional[IndexHistoryPoint]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndexHistoryPoint)
                .where(
                    IndexHistoryPoint.symbol == symbol,
                    IndexHistoryPoint.granularity == granularity,
                    _live(IndexHistoryPoint, self._now()),
                )
                .order_by(IndexHistoryPoint.timestamp.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def range(
        self,
        symbol: str,
        start: datetime,
        end: datetime,
        granularity: str = INTRADAY,
    ) -> List[IndexHistoryPoint]:
        """Points with ``start <= timestamp <= end``, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndexHistoryPoint)
                .where(
                    IndexHistoryPoint.symbol == symbol,
                    IndexHistoryPoint.granularity == granularity,
                    IndexHistoryPoint.timestamp >= to_naive_utc(start),
                    IndexHistoryPoint.timestamp <= to_naive_utc(end),
                    _live(IndexHistoryPoint, self._now()),
                )
                .order_by(IndexHistoryPoint.timestamp.asc())
            )
            return list(result.scalars().all())

    async def daily_series(self, symbol: str, days: int = 30) -> List[IndexHistoryPoint]:
        """Daily points for the last ``days`` exchange-local dates, oldest first."""
        since = self._local_date(self._now()) - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(
                select(IndexHistoryPoint)
                .where(
                    IndexHistoryPoint.symbol == symbol,
                    IndexHistoryPoint.granularity == DAILY,
                    IndexHistoryPoint.date >= since,
                )
                .order_by(IndexHistoryPoint.date.asc())
            )
            return list(result.scalars().all())

    async def purge_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(IndexHistoryPoint).where(
                    and_(
                        IndexHistoryPoint.expires_at.isnot(None),
                        IndexHistoryPoint.expires_at <= self._now(),
                    )
                )
            )
            await session.commit()
        return result.rowcount or 0


class NavStore:
    """Daily NAV per fund with a retention window of ``retention_years``."""

    def __init__(
        self,
        session_factory,
        clock: Clock = system_clock,
        tz: str = "Asia/Kolkata",
        retention_years: int = 5,
        grace_days: int = 10,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._tz = ZoneInfo(tz)
        self._retention_years = retention_years
        # A 5Y lookback must still find the record from exactly 5 years ago
        self._grace = timedelta(days=grace_days)

    def _now(self) -> datetime:
        return to_naive_utc(self._clock())

    def today(self) -> date:
        return self._now().replace(tzinfo=timezone.utc).astimezone(self._tz).date()

    def expires_at_for(self, nav_date: date) -> datetime:
        return datetime.combine(years_after(nav_date, self._retention_years), time()) + self._grace

    async def bulk_upsert(self, entries: Iterable[NavEntry], chunk_size: int = NAV_UPSERT_CHUNK) -> int:
        """Upsert NAVs keyed by (fund_id, date) in chunks. Returns rows written."""
        rows = {
            (e.fund_id, e.date): {
                "fund_id": e.fund_id,
                "date": e.date,
                "nav": e.nav,
                "amfi_code": e.amfi_code,
                "expires_at": self.expires_at_for(e.date),
            }
            for e in entries
        }
        values = list(rows.values())
        if not values:
            return 0

        written = 0
        async with self._session_factory() as session:
            for start in range(0, len(values), chunk_size):
                chunk = values[start:start + chunk_size]
                stmt = dialect_insert(session, NavRecord).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["fund_id", "date"],
                    set_={
                        "nav": stmt.excluded.nav,
                        "amfi_code": stmt.excluded.amfi_code,
                        "expires_at": stmt.excluded.expires_at,
                    },
                )
                await session.execute(stmt)
                await session.commit()
                written += len(chunk)
        logger.debug(f"Upserted {written} NAV records")
        return written

    async def nav_on_or_before(self, fund_id: str, day: date) -> Optional[NavRecord]:
        """Most recent NAV dated on or before ``day``."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(NavRecord)
                .where(
                    NavRecord.fund_id == fund_id,
                    NavRecord.date <= day,
                    _live(NavRecord, self._now()),
                )
                .order_by(NavRecord.date.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def latest(self, fund_id: str) -> Optional[NavRecord]:
        return await self.nav_on_or_before(fund_id, self.today())

    async def history(self, fund_id: str, start: date, end: Optional[date] = None) -> List[NavRecord]:
        """NAVs with ``start <= date <= end`` (end defaults to today), oldest first."""
        end = end or self.today()
        async with self._session_factory() as session:
            result = await session.execute(
                select(NavRecord)
                .where(
                    NavRecord.fund_id == fund_id,
                    NavRecord.date >= start,
                    NavRecord.date <= end,
                    _live(NavRecord, self._now()),
                )
                .order_by(NavRecord.date.asc())
            )
            return list(result.scalars().all())

    async def cleanup_old(self) -> int:
        """Delete records past retention; backs up the row-level expiry."""
        now = self._now()
        cutoff = years_ago(self.today(), self._retention_years) - self._grace
        async with self._session_factory() as session:
            result = await session.execute(
                delete(NavRecord).where(
                    or_(
                        NavRecord.date < cutoff,
                        and_(NavRecord.expires_at.isnot(None), NavRecord.expires_at <= now),
                    )
                )
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Removed {removed} NAV records older than {cutoff.isoformat()}")
        return removed
