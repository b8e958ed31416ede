"""Registered job types with their schedules and retry policies."""
from __future__ import annotations

from typing import List

from navpulse.jobs.daily_nav import DailyNavJob
from navpulse.jobs.indices_refresh import IndicesRefreshJob
from navpulse.jobs.maintenance import MaintenanceJob
from navpulse.jobs.returns_recompute import ReturnsRecomputeJob
from navpulse.jobs.weekly_graph import WeeklyGraphJob
from navpulse.scheduler.queue import RetryPolicy
from navpulse.scheduler.scheduler import JobDefinition
from navpulse.scheduler.schedules import DailySchedule, IntervalSchedule


def build_job_definitions(ctx) -> List[JobDefinition]:
    s = ctx.settings
    tz = s.market_timezone
    return [
        JobDefinition(
            name=IndicesRefreshJob.name,
            worker=IndicesRefreshJob(ctx),
            schedule=IntervalSchedule(s.indices_interval_seconds),
            retry_policy=RetryPolicy(max_retries=3, delay_seconds=60),
            description="Fetch market indices during trading hours",
        ),
        JobDefinition(
            name=DailyNavJob.name,
            worker=DailyNavJob(ctx),
            schedule=DailySchedule(s.nav_job_time, tz),
            retry_policy=RetryPolicy(max_retries=5, delay_seconds=300),
            description="Import the AMFI NAV dump",
        ),
        JobDefinition(
            name=WeeklyGraphJob.name,
            worker=WeeklyGraphJob(ctx),
            schedule=DailySchedule(s.graph_job_time, tz, weekdays=[s.graph_job_weekday]),
            retry_policy=RetryPolicy(max_retries=3, delay_seconds=600, backoff="incremental"),
            description="Re-aggregate weekly NAV chart series",
        ),
        JobDefinition(
            name=ReturnsRecomputeJob.name,
            worker=ReturnsRecomputeJob(ctx),
            retry_policy=RetryPolicy(max_retries=3, delay_seconds=60),
            description="Recompute 1Y/3Y/5Y returns",
        ),
        JobDefinition(
            name=MaintenanceJob.name,
            worker=MaintenanceJob(ctx),
            schedule=DailySchedule(s.maintenance_job_time, tz),
            retry_policy=RetryPolicy(max_retries=1, delay_seconds=600),
            description="Sweep expired history, NAV, graph and cache rows",
        ),
    ]
