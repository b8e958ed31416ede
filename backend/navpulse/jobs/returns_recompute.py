"""Returns recompute for the funds touched by a NAV import (or all active funds)."""
from __future__ import annotations

from navpulse.jobs.base import PipelineJob, bg_logger
from navpulse.scheduler.queue import JobRecord
from navpulse.services.models import JobResult


class ReturnsRecomputeJob(PipelineJob):
    name = "returns-recompute"

    async def run(self, job: JobRecord) -> JobResult:
        ctx = self.ctx
        fund_ids = job.data.get("fund_ids")
        if fund_ids is None:
            fund_ids = [fund.id for fund in await ctx.funds.find_active_funds()]

        counts = await ctx.returns.bulk_update_returns(fund_ids)
        await ctx.returns.invalidate(fund_ids)
        bg_logger.info(f"{self.name}: {counts}")
        return JobResult(success=counts["failed"] == 0, data={"funds": len(fund_ids), **counts})
