"""Weekly re-aggregation of every active fund's chart series."""
from __future__ import annotations

from navpulse.jobs.base import LockedJob, bg_logger
from navpulse.scheduler.queue import JobRecord
from navpulse.services.models import JobResult


class WeeklyGraphJob(LockedJob):
    name = "weekly-graph"
    lock_name = "graph"

    def lock_ttl(self) -> int:
        return self.ctx.settings.graph_lock_ttl_seconds

    async def run_locked(self, job: JobRecord) -> JobResult:
        ctx = self.ctx
        batch_size = ctx.settings.graph_batch_size
        offset = processed = failed = series = 0

        while True:
            batch = await ctx.funds.find_active_funds(offset=offset, limit=batch_size)
            if not batch:
                break
            if not await self.still_owner():
                return self.aborted(processed=processed, failed=failed)

            for fund in batch:
                try:
                    series += await ctx.graphs.aggregate_fund(fund.id)
                    processed += 1
                except Exception as e:
                    failed += 1
                    bg_logger.error(f"{self.name}: fund {fund.id} failed: {e}")

            offset += len(batch)
            bg_logger.debug(f"{self.name}: {offset} funds done ({failed} failed)")
            await ctx.lock.extend(self.lock_key, self.lock_ttl())
            if len(batch) < batch_size:
                break

        return JobResult(
            success=True,
            data={"processed": processed, "failed": failed, "series": series},
        )
