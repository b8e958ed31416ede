import pytest
import httpx
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo
from fakeredis import FakeAsyncRedis, FakeServer

from navpulse.core.config import Settings
from navpulse.db.database import build_engine, build_session_factory, create_tables
from navpulse.services.pipeline import build_pipeline

IST = ZoneInfo("Asia/Kolkata")


def ist(year, month, day, hour=0, minute=0, second=0):
    """Exchange-local moment as an aware datetime."""
    return datetime(year, month, day, hour, minute, second, tzinfo=IST)


class FakeClock:
    """Settable clock; returns aware UTC like the system clock."""

    def __init__(self, now: datetime):
        self.now = now.astimezone(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def set(self, moment: datetime) -> None:
        self.now = moment.astimezone(timezone.utc)

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeUpstream:
    """Canned responses for the NSE and AMFI endpoints."""

    def __init__(self):
        self.indices_body = {"data": []}
        self.indices_status = 200
        self.amfi_text = ""
        self.amfi_status = 200
        self.calls = {"indices": 0, "amfi": 0}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("allIndices"):
            self.calls["indices"] += 1
            return httpx.Response(self.indices_status, json=self.indices_body)
        if request.url.path.endswith("NAVAll.txt"):
            self.calls["amfi"] += 1
            return httpx.Response(self.amfi_status, text=self.amfi_text)
        return httpx.Response(404)


# Wednesday 14 Oct 2026, 11:00 IST: a regular trading session
TRADING_MOMENT = ist(2026, 10, 14, 11, 0)


@pytest.fixture
def clock():
    return FakeClock(TRADING_MOMENT)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def redis_server():
    return FakeServer()


@pytest.fixture
async def redis(redis_server):
    client = FakeAsyncRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def settings():
    return Settings(scheduler_enabled=False, graph_batch_size=2)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
async def pipeline(settings, session_factory, redis, upstream, clock):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    ctx = build_pipeline(settings, session_factory, redis, http_client=http_client, clock=clock)
    yield ctx
    await ctx.shutdown()
    await http_client.aclose()
