"""Daily sweep of expired and stale rows."""
from __future__ import annotations

from navpulse.jobs.base import LockedJob
from navpulse.scheduler.queue import JobRecord
from navpulse.services.models import JobResult


class MaintenanceJob(LockedJob):
    name = "maintenance"
    lock_name = "maintenance"

    def lock_ttl(self) -> int:
        return self.ctx.settings.maintenance_lock_ttl_seconds

    async def run_locked(self, job: JobRecord) -> JobResult:
        ctx = self.ctx
        if not await self.still_owner():
            return self.aborted()
        removed = {
            "historyPoints": await ctx.index_history.purge_expired(),
            "navRecords": await ctx.navs.cleanup_old(),
            "graphSeries": await ctx.graphs.cleanup_stale(),
            "cacheEntries": await ctx.cache.purge_expired(),
        }
        return JobResult(success=True, data=removed)
