from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional

INTRADAY = "intraday"
DAILY = "daily"
GRANULARITIES = (INTRADAY, DAILY)

GRAPH_PERIODS = {"1Y": 1, "3Y": 3, "5Y": 5}


@dataclass
class IndexQuote:
    """One index value as fetched from a provider."""
    symbol: str
    display_name: str
    value: float
    change: float = 0.0
    percent_change: float = 0.0
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    previous_close: Optional[float] = None
    fetched_at: Optional[datetime] = None  # naive UTC


@dataclass
class NavQuote:
    """One row of the AMFI NAV dump."""
    amfi_code: str
    nav: float
    date: date


@dataclass
class NavEntry:
    """NAV matched to an internal fund id, ready to upsert."""
    fund_id: str
    date: date
    nav: float
    amfi_code: Optional[str] = None


@dataclass
class FundRef:
    id: str
    amfi_code: Optional[str] = None


@dataclass
class MarketStatus:
    is_open: bool
    reason: Optional[str] = None


@dataclass
class ReturnsResult:
    fund_id: str
    current_nav: float
    nav_date: date
    return_1y: Optional[float]
    return_3y: Optional[float]
    return_5y: Optional[float]
    amfi_code: Optional[str] = None

    def returns(self) -> Dict[str, Optional[float]]:
        return {"1Y": self.return_1y, "3Y": self.return_3y, "5Y": self.return_5y}


@dataclass
class JobResult:
    """
    Structured outcome of one job run.

    ``action`` is "completed", "skipped" (market closed, lock held) or
    "aborted" (lock lost before writes).
    """
    success: bool
    action: str = "completed"
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def skipped(cls, reason: str, **data: Any) -> "JobResult":
        return cls(success=False, action="skipped", reason=reason, data=data)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if result["reason"] is None:
            result.pop("reason")
        return result


def snapshot_payload(rows: List[Any]) -> List[Dict[str, Any]]:
    """Serialize IndexSnapshot rows for cache, API and broadcast."""
    return [
        {
            "symbol": row.symbol,
            "displayName": row.display_name,
            "value": row.value,
            "change": row.change,
            "percentChange": row.percent_change,
            "open": row.open,
            "high": row.high,
            "low": row.low,
            "previousClose": row.previous_close,
            "lastUpdatedAt": row.last_updated_at.isoformat() if row.last_updated_at else None,
            "isMarketOpenAtCapture": row.is_market_open_at_capture,
        }
        for row in rows
    ]
