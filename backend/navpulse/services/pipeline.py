"""
Process-wide wiring of the data pipeline.

``build_pipeline`` constructs every service once around a single database
session factory, Redis client and HTTP client; the result is passed by
reference to jobs and routes (``app.state.pipeline``).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncEngine

from navpulse.core.circuit_breaker import CircuitOpenError
from navpulse.core.clock import Clock, system_clock
from navpulse.core.config import Settings
from navpulse.core.logging_config import get_main_logger
from navpulse.db.database import create_tables
from navpulse.jobs.definitions import build_job_definitions
from navpulse.scheduler.scheduler import JobScheduler
from navpulse.services.aggregation import GraphService, ReturnsService
from navpulse.services.broadcaster import Broadcaster
from navpulse.services.cache import StoreUnavailableError, TieredCache
from navpulse.services.fund_registry import FundRegistry
from navpulse.services.history_store import IndexHistoryStore, NavStore
from navpulse.services.job_status import JobStatusRegistry
from navpulse.services.lock import DistributedLock
from navpulse.services.market_calendar import MarketCalendarService
from navpulse.services.market_data import MarketDataService
from navpulse.services.providers import (
    INDEX_DEFINITIONS,
    AmfiNavProvider,
    IndicesProvider,
    ProviderError,
)
from navpulse.services.snapshot_store import SnapshotStore

logger = get_main_logger()

# Failures a job may hit in normal operation; logged without a traceback
EXPECTED_JOB_ERRORS = (ProviderError, CircuitOpenError, StoreUnavailableError, RedisError)


def build_redis(settings: Settings):
    return aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
    )


@dataclass
class PipelineContext:
    settings: Settings
    session_factory: Any
    redis: Any
    http_client: httpx.AsyncClient
    clock: Clock
    cache: TieredCache
    lock: DistributedLock
    calendar: MarketCalendarService
    snapshots: SnapshotStore
    index_history: IndexHistoryStore
    navs: NavStore
    returns: ReturnsService
    graphs: GraphService
    funds: FundRegistry
    indices_provider: IndicesProvider
    amfi_provider: AmfiNavProvider
    broadcaster: Broadcaster
    job_status: JobStatusRegistry
    scheduler: JobScheduler
    market_data: MarketDataService
    engine: Optional[AsyncEngine] = None
    owns_http_client: bool = False
    started: bool = field(default=False, init=False)

    async def startup(self, start_scheduler: Optional[bool] = None) -> None:
        """
        Create tables, seed reference data, connect Redis, start the relay
        and the job queues.

        Queue workers always run so manual triggers and follow-up jobs are
        served; ``start_scheduler`` (default ``settings.scheduler_enabled``)
        only decides whether the timed schedules tick.
        """
        if self.engine is not None:
            await create_tables(self.engine)

        seeded = await self.snapshots.seed(INDEX_DEFINITIONS)
        if seeded:
            logger.info(f"Seeded {seeded} index snapshot rows")
        await self.calendar.seed_holidays()

        if not await self.cache.connect():
            logger.warning("Redis unavailable at startup; cache will use the database tier")

        self.broadcaster.start_relay()

        if start_scheduler is None:
            start_scheduler = self.settings.scheduler_enabled
        self.scheduler.start(with_schedules=start_scheduler)
        self.started = True

    async def shutdown(self) -> None:
        await self.scheduler.stop()
        await self.broadcaster.stop_relay()
        if self.owns_http_client:
            await self.http_client.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        self.started = False


def build_pipeline(
    settings: Settings,
    session_factory,
    redis,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = system_clock,
    engine: Optional[AsyncEngine] = None,
) -> PipelineContext:
    tz = settings.market_timezone
    owns_http_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(follow_redirects=True)

    cache = TieredCache(redis, session_factory, clock=clock, retry_seconds=settings.cache_primary_retry_seconds)
    calendar = MarketCalendarService(
        session_factory,
        cache=cache,
        clock=clock,
        tz=tz,
        market_open=settings.market_open,
        market_close=settings.market_close,
        status_ttl_seconds=settings.market_status_cache_ttl,
    )
    snapshots = SnapshotStore(session_factory, clock=clock)
    index_history = IndexHistoryStore(
        session_factory, clock=clock, tz=tz, intraday_retention_days=settings.intraday_retention_days
    )
    navs = NavStore(
        session_factory,
        clock=clock,
        tz=tz,
        retention_years=settings.nav_retention_years,
        grace_days=settings.nav_retention_grace_days,
    )
    returns = ReturnsService(
        session_factory, navs, cache=cache, clock=clock, cache_ttl_seconds=settings.returns_cache_ttl
    )
    graphs = GraphService(
        session_factory,
        navs,
        cache=cache,
        clock=clock,
        staleness_days=settings.graph_staleness_days,
        cleanup_days=settings.graph_cleanup_days,
        cache_ttl_seconds=settings.graph_cache_ttl,
    )
    job_status = JobStatusRegistry()

    ctx = PipelineContext(
        settings=settings,
        session_factory=session_factory,
        redis=redis,
        http_client=http_client,
        clock=clock,
        cache=cache,
        lock=DistributedLock(redis),
        calendar=calendar,
        snapshots=snapshots,
        index_history=index_history,
        navs=navs,
        returns=returns,
        graphs=graphs,
        funds=FundRegistry(session_factory),
        indices_provider=IndicesProvider(
            http_client,
            settings.indices_provider_url,
            settings.http_timeout_seconds,
            deadline_seconds=min(2 * settings.http_timeout_seconds + 1, settings.indices_lock_ttl_seconds / 2),
            clock=clock,
            symbols=[d["symbol"] for d in INDEX_DEFINITIONS],
        ),
        amfi_provider=AmfiNavProvider(
            http_client,
            settings.amfi_nav_url,
            settings.amfi_timeout_seconds,
            deadline_seconds=min(2 * settings.amfi_timeout_seconds + 1, settings.nav_lock_ttl_seconds / 2),
        ),
        broadcaster=Broadcaster(redis, channel=settings.broadcast_channel),
        job_status=job_status,
        scheduler=JobScheduler(job_status, expected_errors=EXPECTED_JOB_ERRORS, clock=clock),
        market_data=MarketDataService(
            cache,
            snapshots,
            index_history,
            calendar,
            returns,
            graphs,
            clock=clock,
            indices_ttl_open=settings.indices_cache_ttl_open,
            indices_ttl_closed=settings.indices_cache_ttl_closed,
        ),
        engine=engine,
        owns_http_client=owns_http_client,
    )

    for definition in build_job_definitions(ctx):
        ctx.scheduler.register(definition)
    return ctx
