from datetime import date, datetime, timedelta

import pytest

from navpulse.services.history_store import IndexHistoryStore, NavStore
from navpulse.services.models import DAILY, INTRADAY, IndexQuote, NavEntry


@pytest.fixture
def history(session_factory, clock):
    return IndexHistoryStore(session_factory, clock=clock)


@pytest.fixture
def navs(session_factory, clock):
    return NavStore(session_factory, clock=clock)


def quote(value, fetched_at, symbol="NIFTY50"):
    return IndexQuote(symbol=symbol, display_name=symbol, value=value, fetched_at=fetched_at)


@pytest.mark.asyncio
async def test_append_writes_both_granularities(history, clock):
    now = clock()
    assert await history.append([quote(22100.0, now)]) == 2

    intraday = await history.range("NIFTY50", now - timedelta(hours=1), now)
    daily = await history.daily_series("NIFTY50")

    assert [p.value for p in intraday] == [22100.0]
    assert len(daily) == 1
    assert daily[0].granularity == DAILY
    assert daily[0].date == date(2026, 10, 14)
    assert daily[0].timestamp == datetime(2026, 10, 14)
    assert daily[0].expires_at is None


@pytest.mark.asyncio
async def test_daily_point_tracks_latest_value(history, clock):
    first = clock()
    second = first + timedelta(minutes=5)
    await history.append([quote(22100.0, first)])
    await history.append([quote(22150.0, second)])

    daily = await history.daily_series("NIFTY50")
    intraday = await history.range("NIFTY50", first, second, INTRADAY)

    assert [p.value for p in daily] == [22150.0]
    assert [p.value for p in intraday] == [22100.0, 22150.0]
    assert (await history.latest("NIFTY50")).value == 22150.0


@pytest.mark.asyncio
async def test_retried_append_does_not_duplicate(history, clock):
    now = clock()
    await history.append([quote(22100.0, now), quote(22105.0, now)])
    await history.append([quote(22105.0, now)])

    points = await history.range("NIFTY50", now, now)
    assert [p.value for p in points] == [22105.0]


@pytest.mark.asyncio
async def test_daily_bucket_uses_exchange_date(history):
    # 20:00 UTC is 01:30 IST the next day
    await history.append([quote(22000.0, datetime(2026, 10, 14, 20, 0))], granularities=[DAILY])
    point = await history.latest("NIFTY50", DAILY)
    assert point.date == date(2026, 10, 15)


@pytest.mark.asyncio
async def test_intraday_expires_daily_stays(history, clock):
    now = clock()
    await history.append([quote(22100.0, now)])

    clock.advance(days=8)

    assert await history.range("NIFTY50", now - timedelta(days=1), clock()) == []
    assert await history.latest("NIFTY50") is None
    assert await history.purge_expired() == 1
    assert len(await history.daily_series("NIFTY50", days=30)) == 1


@pytest.mark.asyncio
async def test_unknown_granularity(history, clock):
    with pytest.raises(ValueError):
        await history.append([quote(1.0, clock())], granularities=["hourly"])


@pytest.mark.asyncio
async def test_nav_upsert_and_lookup(navs):
    written = await navs.bulk_upsert([
        NavEntry("f1", date(2026, 10, 12), 101.0, "100001"),
        NavEntry("f1", date(2026, 10, 13), 102.0, "100001"),
        NavEntry("f1", date(2026, 10, 13), 102.5, "100001"),
    ])
    assert written == 2

    assert (await navs.latest("f1")).nav == 102.5
    assert (await navs.nav_on_or_before("f1", date(2026, 10, 12))).nav == 101.0
    assert await navs.nav_on_or_before("f1", date(2026, 10, 11)) is None
    assert [r.date for r in await navs.history("f1", date(2026, 10, 1))] == [
        date(2026, 10, 12),
        date(2026, 10, 13),
    ]


@pytest.mark.asyncio
async def test_nav_upsert_in_chunks(navs):
    start = date(2026, 1, 1)
    entries = [NavEntry("f1", start + timedelta(days=i), 100.0 + i) for i in range(7)]
    assert await navs.bulk_upsert(entries, chunk_size=3) == 7
    assert len(await navs.history("f1", start)) == 7


@pytest.mark.asyncio
async def test_nav_retention_keeps_five_year_lookback(navs):
    await navs.bulk_upsert([
        NavEntry("f1", date(2021, 9, 1), 50.0),
        NavEntry("f1", date(2021, 10, 14), 60.0),
        NavEntry("f1", date(2026, 10, 14), 120.0),
    ])

    assert navs.expires_at_for(date(2021, 10, 14)) == datetime(2026, 10, 24)
    assert (await navs.nav_on_or_before("f1", date(2021, 10, 14))).nav == 60.0
    assert await navs.nav_on_or_before("f1", date(2021, 9, 30)) is None

    assert await navs.cleanup_old() == 1
    assert [r.nav for r in await navs.history("f1", date(2020, 1, 1))] == [60.0, 120.0]
