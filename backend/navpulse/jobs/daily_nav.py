"""Daily NAV import from AMFI, followed by a returns recompute job."""
from __future__ import annotations

from navpulse.jobs.base import LockedJob, bg_logger
from navpulse.scheduler.queue import JobRecord
from navpulse.services.models import JobResult

RETURNS_JOB = "returns-recompute"


class DailyNavJob(LockedJob):
    name = "daily-nav"
    lock_name = "nav"

    def lock_ttl(self) -> int:
        return self.ctx.settings.nav_lock_ttl_seconds

    async def run_locked(self, job: JobRecord) -> JobResult:
        ctx = self.ctx
        quotes = await ctx.amfi_provider.fetch()
        entries = await ctx.funds.match_nav_quotes(quotes)
        bg_logger.info(f"{self.name}: matched {len(entries)} of {len(quotes)} AMFI rows to funds")

        if not await self.still_owner():
            return self.aborted(fetched=len(quotes), matched=len(entries))

        written = await ctx.navs.bulk_upsert(entries)

        fund_ids = sorted({entry.fund_id for entry in entries})
        follow_up = None
        if fund_ids:
            follow_up = ctx.scheduler.enqueue(RETURNS_JOB, {"fund_ids": fund_ids})

        return JobResult(
            success=True,
            data={
                "fetched": len(quotes),
                "matched": len(entries),
                "written": written,
                "returnsJobId": follow_up.id if follow_up else None,
            },
        )
