"""
Derived fund data: rolling returns and weekly chart series.

Both are computed from the NAV history and stored as one overwritten row
per fund (returns) or per fund and period (graph). Graph series are
recomputed on read once they are older than the staleness threshold.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
from sqlalchemy import delete, select

from navpulse.core.clock import Clock, system_clock, to_naive_utc, years_ago
from navpulse.core.logging_config import get_main_logger
from navpulse.db.database import dialect_insert
from navpulse.db.models import GraphSeries, ReturnsSnapshot
from navpulse.services.cache import CACHE_KEYS
from navpulse.services.history_store import NavStore
from navpulse.services.models import GRAPH_PERIODS, ReturnsResult

logger = get_main_logger()

RETURN_WINDOWS = (1, 3, 5)


def percent_return(current: float, past: Optional[float]) -> Optional[float]:
    """``(current - past) / past * 100`` rounded to 4 places; None without a usable base."""
    if past is None or past == 0:
        return None
    return round((current - past) / past * 100, 4)


def bucket_weekly(records: Iterable[Tuple[date, float]]) -> List[dict]:
    """
    Down-sample ``(date, nav)`` pairs to one point per ISO week.

    Keeps the latest-dated record inside each Monday-Sunday week and
    returns the points oldest first.
    """
    df = pd.DataFrame(list(records), columns=["date", "nav"])
    if df.empty:
        return []

    df["date"] = pd.to_datetime(df["date"])
    df = df.sort_values("date", kind="stable")
    weekly = df.groupby(df["date"].dt.to_period("W-SUN")).tail(1).sort_values("date")

    return [
        {"date": ts.date().isoformat(), "nav": float(nav)}
        for ts, nav in zip(weekly["date"], weekly["nav"])
    ]


def returns_payload(row) -> dict:
    return {
        "fundId": row.fund_id,
        "amfiCode": row.amfi_code,
        "currentNav": row.current_nav,
        "navDate": row.nav_date.isoformat(),
        "return1Y": row.return_1y,
        "return3Y": row.return_3y,
        "return5Y": row.return_5y,
        "lastCalculatedAt": row.last_calculated_at.isoformat(),
    }


def graph_payload(row) -> dict:
    return {
        "fundId": row.fund_id,
        "period": row.period,
        "points": row.points,
        "pointCount": row.point_count,
        "lastAggregatedAt": row.last_aggregated_at.isoformat(),
    }


class ReturnsService:
    """1Y/3Y/5Y trailing returns per fund."""

    def __init__(
        self,
        session_factory,
        nav_store: NavStore,
        cache=None,
        clock: Clock = system_clock,
        cache_ttl_seconds: int = 3600,
    ):
        self._session_factory = session_factory
        self._nav_store = nav_store
        self._cache = cache
        self._clock = clock
        self._cache_ttl = cache_ttl_seconds

    async def compute(self, fund_id: str) -> Optional[ReturnsResult]:
        """Returns from stored NAVs, or None if the fund has no NAV yet."""
        today = self._nav_store.today()
        current = await self._nav_store.nav_on_or_before(fund_id, today)
        if current is None:
            return None

        returns = {}
        for years in RETURN_WINDOWS:
            past = await self._nav_store.nav_on_or_before(fund_id, years_ago(today, years))
            returns[years] = percent_return(current.nav, past.nav if past else None)

        return ReturnsResult(
            fund_id=fund_id,
            current_nav=current.nav,
            nav_date=current.date,
            return_1y=returns[1],
            return_3y=returns[3],
            return_5y=returns[5],
            amfi_code=current.amfi_code,
        )

    async def update_returns(self, fund_id: str) -> Optional[ReturnsResult]:
        """Recompute and overwrite the fund's returns snapshot."""
        result = await self.compute(fund_id)
        if result is None:
            logger.debug(f"No NAV for fund {fund_id}, returns not written")
            return None

        now = to_naive_utc(self._clock())
        async with self._session_factory() as session:
            stmt = dialect_insert(session, ReturnsSnapshot).values(
                fund_id=result.fund_id,
                amfi_code=result.amfi_code,
                current_nav=result.current_nav,
                nav_date=result.nav_date,
                return_1y=result.return_1y,
                return_3y=result.return_3y,
                return_5y=result.return_5y,
                last_calculated_at=now,
            )
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=["fund_id"],
                set_={
                    "amfi_code": excluded.amfi_code,
                    "current_nav": excluded.current_nav,
                    "nav_date": excluded.nav_date,
                    "return_1y": excluded.return_1y,
                    "return_3y": excluded.return_3y,
                    "return_5y": excluded.return_5y,
                    "last_calculated_at": excluded.last_calculated_at,
                },
            )
            await session.execute(stmt)
            await session.commit()
        return result

    async def bulk_update_returns(self, fund_ids: Iterable[str]) -> Dict[str, int]:
        """Recompute many funds; one failing fund never stops the rest."""
        counts = {"updated": 0, "skipped": 0, "failed": 0}
        for fund_id in fund_ids:
            try:
                result = await self.update_returns(fund_id)
            except Exception as e:
                counts["failed"] += 1
                logger.error(f"Returns recompute failed for fund {fund_id}: {e}")
                continue
            counts["updated" if result else "skipped"] += 1
        return counts

    async def get_snapshot(self, fund_id: str) -> Optional[ReturnsSnapshot]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ReturnsSnapshot).where(ReturnsSnapshot.fund_id == fund_id)
            )
            return result.scalar_one_or_none()

    async def get_returns(self, fund_id: str) -> Optional[dict]:
        """Cached returns payload; computed on first read if never stored."""
        key = CACHE_KEYS["returns"].format(fund_id=fund_id)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not None:
                return cached

        row = await self.get_snapshot(fund_id)
        if row is None:
            if await self.update_returns(fund_id) is None:
                return None
            row = await self.get_snapshot(fund_id)

        payload = returns_payload(row)
        if self._cache is not None:
            await self._cache.set(key, payload, self._cache_ttl)
        return payload

    async def invalidate(self, fund_ids: Iterable[str]) -> int:
        if self._cache is None:
            return 0
        removed = 0
        for fund_id in fund_ids:
            removed += await self._cache.delete(CACHE_KEYS["returns"].format(fund_id=fund_id))
        return removed


class GraphService:
    """Weekly NAV chart series per fund and period."""

    def __init__(
        self,
        session_factory,
        nav_store: NavStore,
        cache=None,
        clock: Clock = system_clock,
        staleness_days: int = 7,
        cleanup_days: int = 30,
        cache_ttl_seconds: int = 6 * 3600,
    ):
        self._session_factory = session_factory
        self._nav_store = nav_store
        self._cache = cache
        self._clock = clock
        self._staleness = timedelta(days=staleness_days)
        self._cleanup_after = timedelta(days=cleanup_days)
        self._cache_ttl = cache_ttl_seconds

    def _now(self) -> datetime:
        return to_naive_utc(self._clock())

    @staticmethod
    def _years(period: str) -> int:
        try:
            return GRAPH_PERIODS[period]
        except KeyError:
            raise ValueError(f"Unknown graph period: {period}") from None

    async def _stored(self, fund_id: str, period: str) -> Optional[GraphSeries]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(GraphSeries).where(
                    GraphSeries.fund_id == fund_id,
                    GraphSeries.period == period,
                )
            )
            return result.scalar_one_or_none()

    def is_stale(self, row: Optional[GraphSeries]) -> bool:
        return row is None or self._now() - row.last_aggregated_at > self._staleness

    async def aggregate(self, fund_id: str, period: str) -> Optional[dict]:
        """
        Rebuild and store one series.

        A fund without NAVs in the window yields None and nothing is stored.
        """
        years = self._years(period)
        start = years_ago(self._nav_store.today(), years)
        records = await self._nav_store.history(fund_id, start)
        points = bucket_weekly((r.date, r.nav) for r in records)
        if not points:
            return None

        now = self._now()
        async with self._session_factory() as session:
            stmt = dialect_insert(session, GraphSeries).values(
                fund_id=fund_id,
                period=period,
                points=points,
                point_count=len(points),
                last_aggregated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["fund_id", "period"],
                set_={
                    "points": stmt.excluded.points,
                    "point_count": stmt.excluded.point_count,
                    "last_aggregated_at": stmt.excluded.last_aggregated_at,
                },
            )
            await session.execute(stmt)
            await session.commit()

        return {
            "fundId": fund_id,
            "period": period,
            "points": points,
            "pointCount": len(points),
            "lastAggregatedAt": now.isoformat(),
        }

    async def aggregate_fund(self, fund_id: str) -> int:
        """Rebuild every period for a fund and drop its cached series. Returns periods stored."""
        stored = 0
        for period in GRAPH_PERIODS:
            if await self.aggregate(fund_id, period) is not None:
                stored += 1
        if self._cache is not None:
            await self._cache.delete(CACHE_KEYS["graph_fund"].format(fund_id=fund_id))
        return stored

    async def get_graph_data(self, fund_id: str, period: str = "1Y") -> Optional[dict]:
        """Stored series, recomputed first if missing or stale."""
        self._years(period)
        key = CACHE_KEYS["graph"].format(fund_id=fund_id, period=period)
        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not None:
                return cached

        row = await self._stored(fund_id, period)
        if self.is_stale(row):
            logger.debug(f"Graph {fund_id}/{period} missing or stale, aggregating")
            payload = await self.aggregate(fund_id, period)
        else:
            payload = graph_payload(row)

        if payload is not None and self._cache is not None:
            await self._cache.set(key, payload, self._cache_ttl)
        return payload

    async def get_all_graph_data(self, fund_id: str) -> Dict[str, Optional[dict]]:
        return {period: await self.get_graph_data(fund_id, period) for period in GRAPH_PERIODS}

    async def cleanup_stale(self) -> int:
        """Delete series not re-aggregated within the cleanup window."""
        cutoff = self._now() - self._cleanup_after
        async with self._session_factory() as session:
            result = await session.execute(
                delete(GraphSeries).where(GraphSeries.last_aggregated_at < cutoff)
            )
            await session.commit()
        return result.rowcount or 0
