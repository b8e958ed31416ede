"""
Read-side facade used by the HTTP and WebSocket layers.

Routes never touch the stores directly; everything they serve goes through
here so cache keys and payload shapes live in one place.
"""
from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from navpulse.core.clock import Clock, system_clock, to_naive_utc
from navpulse.services.aggregation import GraphService, ReturnsService
from navpulse.services.cache import CACHE_KEYS, TieredCache
from navpulse.services.history_store import IndexHistoryStore
from navpulse.services.market_calendar import MarketCalendarService
from navpulse.services.models import INTRADAY, snapshot_payload
from navpulse.services.snapshot_store import SnapshotStore


def history_payload(points) -> List[dict]:
    return [
        {
            "timestamp": p.timestamp.isoformat(),
            "date": p.date.isoformat(),
            "granularity": p.granularity,
            "value": p.value,
            "change": p.change,
            "percentChange": p.percent_change,
            "open": p.open,
            "high": p.high,
            "low": p.low,
            "close": p.close,
        }
        for p in points
    ]


class MarketDataService:

    def __init__(
        self,
        cache: TieredCache,
        snapshots: SnapshotStore,
        index_history: IndexHistoryStore,
        calendar: MarketCalendarService,
        returns: ReturnsService,
        graphs: GraphService,
        clock: Clock = system_clock,
        indices_ttl_open: int = 300,
        indices_ttl_closed: int = 3600,
    ):
        self.cache = cache
        self.snapshots = snapshots
        self.index_history = index_history
        self.calendar = calendar
        self.returns = returns
        self.graphs = graphs
        self._clock = clock
        self._ttl_open = indices_ttl_open
        self._ttl_closed = indices_ttl_closed

    async def get_all_indices(self) -> List[dict]:
        """Latest snapshot of every index, cached longer while the market is closed."""
        cached = await self.cache.get(CACHE_KEYS["indices_latest"])
        if cached is not None:
            return cached

        payload = snapshot_payload(await self.snapshots.all())
        status = await self.calendar.is_market_open()
        ttl = self._ttl_open if status.is_open else self._ttl_closed
        await self.cache.set(CACHE_KEYS["indices_latest"], payload, ttl)
        return payload

    async def get_index_by_symbol(self, symbol: str) -> Optional[dict]:
        row = await self.snapshots.get(symbol)
        if row is None:
            return None
        return snapshot_payload([row])[0]

    async def get_major_indices(self) -> List[dict]:
        return snapshot_payload(await self.snapshots.get_major())

    async def is_data_stale(self, max_age_minutes: int = 10) -> bool:
        return await self.snapshots.is_data_stale(max_age_minutes)

    async def get_market_status(self) -> dict:
        return await self.calendar.get_market_status()

    async def get_index_history(self, symbol: str, hours: int = 24) -> List[dict]:
        end = to_naive_utc(self._clock())
        start = end - timedelta(hours=hours)
        points = await self.index_history.range(symbol.upper(), start, end, INTRADAY)
        return history_payload(points)

    async def get_index_daily_series(self, symbol: str, days: int = 30) -> List[dict]:
        return history_payload(await self.index_history.daily_series(symbol.upper(), days))

    async def get_returns(self, fund_id: str) -> Optional[dict]:
        return await self.returns.get_returns(fund_id)

    async def get_graph_data(self, fund_id: str, period: str = "1Y") -> Optional[dict]:
        return await self.graphs.get_graph_data(fund_id, period)

    async def get_all_graph_data(self, fund_id: str) -> dict:
        return await self.graphs.get_all_graph_data(fund_id)
