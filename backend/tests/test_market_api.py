import asyncio

import pytest
from datetime import date
from httpx import AsyncClient, ASGITransport

from navpulse.core.security import create_access_token
from navpulse.main import create_app
from navpulse.services.models import IndexQuote, NavEntry


@pytest.fixture
async def client(pipeline):
    await pipeline.startup(start_scheduler=False)
    app = create_app()
    app.state.pipeline = pipeline
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def auth(role=None):
    return {"Authorization": f"Bearer {create_access_token('user-1', role=role)}"}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "cachePrimary": True}


@pytest.mark.asyncio
async def test_market_status(client):
    response = await client.get("/api/v1/market/status")

    assert response.status_code == 200
    data = response.json()
    assert data["isOpen"] is True
    assert data["nextTradingDay"] == "2026-10-15"


@pytest.mark.asyncio
async def test_get_indices(client, pipeline, clock):
    await pipeline.snapshots.upsert_many([
        IndexQuote(symbol="NIFTY50", display_name="NIFTY 50", value=22100.0, fetched_at=clock()),
    ])

    response = await client.get("/api/v1/market/indices")

    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 11
    assert data["isStale"] is False
    values = {idx["symbol"]: idx["value"] for idx in data["indices"]}
    assert values["NIFTY50"] == 22100.0
    assert values["SENSEX"] == 0.0


@pytest.mark.asyncio
async def test_indices_stale_before_first_fetch(client):
    response = await client.get("/api/v1/market/indices")
    assert response.json()["isStale"] is True


@pytest.mark.asyncio
async def test_major_indices(client):
    response = await client.get("/api/v1/market/indices/major")
    data = response.json()
    assert data["count"] == 5
    assert data["indices"][0]["symbol"] == "NIFTY50"


@pytest.mark.asyncio
async def test_get_index_by_symbol(client):
    response = await client.get("/api/v1/market/indices/niftybank")
    assert response.status_code == 200
    assert response.json()["displayName"] == "NIFTY BANK"

    missing = await client.get("/api/v1/market/indices/DOWJONES")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_index_history(client, pipeline, clock):
    await pipeline.index_history.append([
        IndexQuote(symbol="NIFTY50", display_name="NIFTY 50", value=22100.0, fetched_at=clock()),
    ])

    intraday = await client.get("/api/v1/market/indices/NIFTY50/history", params={"hours": 2})
    daily = await client.get("/api/v1/market/indices/NIFTY50/history", params={"granularity": "daily"})
    invalid = await client.get("/api/v1/market/indices/NIFTY50/history", params={"granularity": "hourly"})

    assert intraday.json()["count"] == 1
    assert intraday.json()["points"][0]["value"] == 22100.0
    assert daily.json()["points"][0]["date"] == "2026-10-14"
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_fund_returns_and_graph(client, pipeline):
    await pipeline.navs.bulk_upsert([
        NavEntry("f1", date(2025, 10, 14), 100.0, "100001"),
        NavEntry("f1", date(2026, 10, 14), 120.0, "100001"),
    ])

    returns = await client.get("/api/v1/funds/f1/returns")
    graph = await client.get("/api/v1/funds/f1/graph", params={"period": "1Y"})
    everything = await client.get("/api/v1/funds/f1/graph/all")

    assert returns.status_code == 200
    assert returns.json()["return1Y"] == 20.0
    assert returns.json()["return5Y"] is None
    assert graph.json()["pointCount"] == 2
    assert set(everything.json()) == {"1Y", "3Y", "5Y"}


@pytest.mark.asyncio
async def test_fund_without_data(client):
    assert (await client.get("/api/v1/funds/ghost/returns")).status_code == 404
    assert (await client.get("/api/v1/funds/ghost/graph")).status_code == 404
    assert (await client.get("/api/v1/funds/f1/graph", params={"period": "2Y"})).status_code == 422


@pytest.mark.asyncio
async def test_job_stats(client):
    response = await client.get("/api/v1/jobs/stats")

    assert response.status_code == 200
    jobs = response.json()["jobs"]
    assert set(jobs) == {"indices-refresh", "daily-nav", "weekly-graph", "returns-recompute", "maintenance"}
    assert jobs["indices-refresh"]["schedule"] == "every 300s"
    assert jobs["returns-recompute"]["schedule"] is None


@pytest.mark.asyncio
async def test_trigger_requires_admin(client):
    anonymous = await client.post("/api/v1/jobs/daily-nav/trigger")
    user = await client.post("/api/v1/jobs/daily-nav/trigger", headers=auth())
    garbage = await client.post("/api/v1/jobs/daily-nav/trigger", headers={"Authorization": "Bearer nope"})

    assert anonymous.status_code == 401
    assert user.status_code == 403
    assert garbage.status_code == 401


@pytest.mark.asyncio
async def test_trigger_queues_manual_run(client, pipeline):
    response = await client.post(
        "/api/v1/jobs/returns-recompute/trigger",
        json={"data": {"fund_ids": ["f1"]}},
        headers=auth("admin"),
    )

    assert response.status_code == 202
    data = response.json()
    assert data["name"] == "returns-recompute"
    assert data["state"] == "waiting"

    queue = pipeline.scheduler.queue("returns-recompute")
    for _ in range(200):
        if queue.completed:
            break
        await asyncio.sleep(0.01)
    assert queue.completed[-1].id == data["jobId"]
    assert queue.completed[-1].manual
    assert pipeline.scheduler.get_job_stats()["returns-recompute"]["waiting"] == 0

    unknown = await client.post("/api/v1/jobs/nope/trigger", headers=auth("admin"))
    assert unknown.status_code == 404
