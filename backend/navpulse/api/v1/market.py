"""
Market status and index API endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import List, Optional

from navpulse.core.deps import get_market_data

router = APIRouter(prefix="/market", tags=["market"])


class MarketStatusResponse(BaseModel):
    isOpen: bool
    reason: Optional[str] = None
    currentTime: str
    timestamp: str
    nextTradingDay: Optional[str] = None


class IndexSnapshotItem(BaseModel):
    symbol: str
    displayName: str
    value: float
    change: float
    percentChange: float
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    previousClose: Optional[float] = None
    lastUpdatedAt: Optional[str] = None
    isMarketOpenAtCapture: bool = False


class IndicesResponse(BaseModel):
    """Response model for index lists."""
    indices: List[IndexSnapshotItem]
    count: int
    isStale: bool = False


class IndexHistoryResponse(BaseModel):
    symbol: str
    granularity: str
    points: List[dict]
    count: int


@router.get("/status", response_model=MarketStatusResponse)
async def get_market_status(market_data=Depends(get_market_data)):
    """Whether the exchange is open right now, and why not if closed."""
    return await market_data.get_market_status()


@router.get("/indices", response_model=IndicesResponse)
async def get_all_indices(market_data=Depends(get_market_data)):
    """
    Latest value of every tracked index.

    During an upstream outage this keeps serving the last stored snapshot;
    ``isStale`` tells the client how fresh it is.
    """
    indices = await market_data.get_all_indices()
    return IndicesResponse(
        indices=indices,
        count=len(indices),
        isStale=await market_data.is_data_stale()
    )


@router.get("/indices/major", response_model=IndicesResponse)
async def get_major_indices(market_data=Depends(get_market_data)):
    indices = await market_data.get_major_indices()
    return IndicesResponse(indices=indices, count=len(indices))


@router.get("/indices/{symbol}", response_model=IndexSnapshotItem)
async def get_index(symbol: str, market_data=Depends(get_market_data)):
    index = await market_data.get_index_by_symbol(symbol)
    if index is None:
        raise HTTPException(status_code=404, detail=f"Index {symbol} not found")
    return index


@router.get("/indices/{symbol}/history", response_model=IndexHistoryResponse)
async def get_index_history(
    symbol: str,
    granularity: str = Query("intraday", pattern="^(intraday|daily)$"),
    hours: int = Query(24, ge=1, le=24 * 7),
    days: int = Query(30, ge=1, le=3650),
    market_data=Depends(get_market_data)
):
    """
    Index time series.

    Args:
        granularity: "intraday" (last ``hours`` hours) or "daily" (last ``days`` days)
    """
    if granularity == "daily":
        points = await market_data.get_index_daily_series(symbol, days)
    else:
        points = await market_data.get_index_history(symbol, hours)
    return IndexHistoryResponse(
        symbol=symbol.upper(),
        granularity=granularity,
        points=points,
        count=len(points)
    )
