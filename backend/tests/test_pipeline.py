import pytest
from sqlalchemy import func, select

from navpulse.db.models import IndexSnapshot, MarketHoliday
from navpulse.scheduler.queue import JobState
from navpulse.services.market_calendar import HOLIDAYS_2026
from navpulse.services.providers import INDEX_DEFINITIONS


@pytest.mark.asyncio
async def test_startup_seeds_reference_data(pipeline, session_factory):
    await pipeline.startup(start_scheduler=False)
    await pipeline.startup(start_scheduler=False)

    async with session_factory() as session:
        snapshots = await session.scalar(select(func.count()).select_from(IndexSnapshot))
        holidays = await session.scalar(select(func.count()).select_from(MarketHoliday))

    assert snapshots == len(INDEX_DEFINITIONS)
    assert holidays == len(HOLIDAYS_2026)
    assert pipeline.started
    assert pipeline.cache.primary_available


@pytest.mark.asyncio
async def test_startup_survives_redis_outage(pipeline, redis_server):
    redis_server.connected = False

    await pipeline.startup(start_scheduler=False)

    assert pipeline.started
    assert not pipeline.cache.primary_available
    # Reads fall through to the database tier
    indices = await pipeline.market_data.get_all_indices()
    assert len(indices) == len(INDEX_DEFINITIONS)
    assert await pipeline.cache.get("market:indices:latest") == indices


@pytest.mark.asyncio
async def test_scheduler_lifecycle(pipeline):
    await pipeline.startup(start_scheduler=True)
    assert pipeline.scheduler.queue("indices-refresh").running
    assert pipeline.scheduler.schedules_active

    await pipeline.shutdown()
    assert not pipeline.started
    assert not pipeline.scheduler.queue("indices-refresh").running


@pytest.mark.asyncio
async def test_manual_trigger_runs_with_schedules_disabled(pipeline):
    await pipeline.startup(start_scheduler=False)
    assert not pipeline.scheduler.schedules_active

    job = await pipeline.scheduler.trigger_job("returns-recompute").wait(timeout=5)

    assert job.state == JobState.COMPLETED
    assert job.manual
