"""
Fund-related API endpoints.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from typing import Dict, List, Optional

from navpulse.core.deps import get_market_data

router = APIRouter(prefix="/funds", tags=["funds"])


class ReturnsResponse(BaseModel):
    fundId: str
    amfiCode: Optional[str] = None
    currentNav: float
    navDate: str
    return1Y: Optional[float] = None
    return3Y: Optional[float] = None
    return5Y: Optional[float] = None
    lastCalculatedAt: str


class GraphPoint(BaseModel):
    date: str
    nav: float


class GraphResponse(BaseModel):
    fundId: str
    period: str
    points: List[GraphPoint]
    pointCount: int
    lastAggregatedAt: str


@router.get("/{fund_id}/returns", response_model=ReturnsResponse)
async def get_fund_returns(fund_id: str, market_data=Depends(get_market_data)):
    """
    Get 1Y/3Y/5Y trailing returns for a fund.

    A return is null when the fund has no NAV that far back.
    """
    returns = await market_data.get_returns(fund_id)
    if returns is None:
        raise HTTPException(status_code=404, detail=f"No NAV data for fund {fund_id}")
    return returns


@router.get("/{fund_id}/graph", response_model=GraphResponse)
async def get_fund_graph(
    fund_id: str,
    period: str = Query("1Y", pattern="^(1Y|3Y|5Y)$"),
    market_data=Depends(get_market_data)
):
    """
    Get the weekly NAV series for a fund.

    Args:
        period: Lookback window, one of "1Y", "3Y", "5Y"
    """
    graph = await market_data.get_graph_data(fund_id, period)
    if graph is None:
        raise HTTPException(status_code=404, detail=f"No NAV data for fund {fund_id}")
    return graph


@router.get("/{fund_id}/graph/all", response_model=Dict[str, Optional[GraphResponse]])
async def get_fund_graph_all(fund_id: str, market_data=Depends(get_market_data)):
    """Every period at once; a period without data is null."""
    return await market_data.get_all_graph_data(fund_id)
