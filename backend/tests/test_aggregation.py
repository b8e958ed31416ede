from datetime import date

import pytest
from sqlalchemy import func, select

from navpulse.db.models import GraphSeries, ReturnsSnapshot
from navpulse.services.aggregation import bucket_weekly, percent_return
from navpulse.services.models import NavEntry


def test_percent_return():
    assert percent_return(120.0, 100.0) == 20.0
    assert percent_return(100.0, 300.0) == -66.6667
    assert percent_return(100.0, None) is None
    assert percent_return(100.0, 0) is None


def test_bucket_weekly_keeps_last_record_of_week():
    records = [
        (date(2026, 10, 5), 100.0),  # Monday
        (date(2026, 10, 9), 102.0),  # Friday
        (date(2026, 10, 7), 105.0),  # Wednesday
    ]
    assert bucket_weekly(records) == [{"date": "2026-10-09", "nav": 102.0}]


def test_bucket_weekly_splits_on_monday():
    records = [
        (date(2026, 10, 9), 102.0),
        (date(2026, 10, 11), 103.0),  # Sunday closes the week
        (date(2026, 10, 12), 110.0),  # Monday opens the next
    ]
    assert bucket_weekly(records) == [
        {"date": "2026-10-11", "nav": 103.0},
        {"date": "2026-10-12", "nav": 110.0},
    ]


def test_bucket_weekly_empty():
    assert bucket_weekly([]) == []


async def seed_navs(pipeline):
    await pipeline.navs.bulk_upsert([
        NavEntry("f1", date(2023, 10, 13), 80.0, "100001"),
        NavEntry("f1", date(2025, 10, 14), 100.0, "100001"),
        NavEntry("f1", date(2026, 10, 5), 118.0, "100001"),
        NavEntry("f1", date(2026, 10, 9), 119.0, "100001"),
        NavEntry("f1", date(2026, 10, 14), 120.0, "100001"),
    ])


@pytest.mark.asyncio
async def test_compute_returns(pipeline):
    await seed_navs(pipeline)

    result = await pipeline.returns.compute("f1")

    assert result.current_nav == 120.0
    assert result.nav_date == date(2026, 10, 14)
    assert result.return_1y == 20.0
    # No NAV on the anniversary itself; the closest earlier one is used
    assert result.return_3y == 50.0
    assert result.return_5y is None


@pytest.mark.asyncio
async def test_returns_without_nav(pipeline):
    assert await pipeline.returns.compute("ghost") is None
    assert await pipeline.returns.get_returns("ghost") is None


@pytest.mark.asyncio
async def test_update_returns_is_idempotent(pipeline, session_factory):
    await seed_navs(pipeline)

    first = await pipeline.returns.update_returns("f1")
    second = await pipeline.returns.update_returns("f1")

    assert first == second
    async with session_factory() as session:
        assert await session.scalar(select(func.count()).select_from(ReturnsSnapshot)) == 1


@pytest.mark.asyncio
async def test_get_returns_computes_lazily_and_caches(pipeline):
    await seed_navs(pipeline)

    payload = await pipeline.returns.get_returns("f1")

    assert payload["return1Y"] == 20.0
    assert payload["amfiCode"] == "100001"
    assert await pipeline.cache.get("returns:f1") == payload
    assert await pipeline.returns.invalidate(["f1"]) == 1
    assert await pipeline.cache.get("returns:f1") is None


@pytest.mark.asyncio
async def test_bulk_update_counts(pipeline):
    await seed_navs(pipeline)
    counts = await pipeline.returns.bulk_update_returns(["f1", "ghost"])
    assert counts == {"updated": 1, "skipped": 1, "failed": 0}


@pytest.mark.asyncio
async def test_aggregate_graph(pipeline):
    await seed_navs(pipeline)

    graph = await pipeline.graphs.aggregate("f1", "1Y")

    assert graph["points"] == [
        {"date": "2025-10-14", "nav": 100.0},
        {"date": "2026-10-09", "nav": 119.0},
        {"date": "2026-10-14", "nav": 120.0},
    ]
    assert graph["pointCount"] == 3
    assert await pipeline.graphs.aggregate("ghost", "1Y") is None


@pytest.mark.asyncio
async def test_graph_read_path(pipeline, clock):
    await seed_navs(pipeline)

    graph = await pipeline.graphs.get_graph_data("f1", "5Y")
    assert graph["points"][0] == {"date": "2023-10-13", "nav": 80.0}
    assert await pipeline.cache.get("graph:f1:5Y") == graph

    graph = await pipeline.graphs.get_graph_data("f1", "3Y")
    assert graph["points"][0] == {"date": "2025-10-14", "nav": 100.0}
    assert await pipeline.cache.get("graph:f1:3Y") == graph

    with pytest.raises(ValueError):
        await pipeline.graphs.get_graph_data("f1", "2Y")

    everything = await pipeline.graphs.get_all_graph_data("f1")
    assert set(everything) == {"1Y", "3Y", "5Y"}
    assert await pipeline.graphs.get_all_graph_data("ghost") == {"1Y": None, "3Y": None, "5Y": None}


@pytest.mark.asyncio
async def test_aggregate_fund_drops_cached_series(pipeline):
    await seed_navs(pipeline)
    await pipeline.cache.set("graph:f1:1Y", {"stale": True})
    await pipeline.cache.set("graph:f2:1Y", {"other": True})

    assert await pipeline.graphs.aggregate_fund("f1") == 3

    assert await pipeline.cache.get("graph:f1:1Y") is None
    assert await pipeline.cache.get("graph:f2:1Y") == {"other": True}


@pytest.mark.asyncio
async def test_stale_series_are_rebuilt_then_cleaned(pipeline, session_factory, clock):
    await seed_navs(pipeline)
    await pipeline.graphs.aggregate("f1", "1Y")

    async with session_factory() as session:
        row = (await session.execute(select(GraphSeries))).scalar_one()
    assert not pipeline.graphs.is_stale(row)

    clock.advance(days=8)
    assert pipeline.graphs.is_stale(row)

    clock.advance(days=30)
    assert await pipeline.graphs.cleanup_stale() == 1
