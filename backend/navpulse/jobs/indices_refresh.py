"""Market indices refresh: fetch, store snapshot and history, broadcast."""
from __future__ import annotations

from typing import Optional

from navpulse.core.clock import to_naive_utc
from navpulse.jobs.base import LockedJob, bg_logger
from navpulse.scheduler.queue import JobRecord
from navpulse.services.cache import CACHE_KEYS
from navpulse.services.models import JobResult, snapshot_payload

MARKET_UPDATE_EVENT = "market:update"


class IndicesRefreshJob(LockedJob):
    name = "indices-refresh"
    lock_name = "indices"

    def lock_ttl(self) -> int:
        return self.ctx.settings.indices_lock_ttl_seconds

    async def precheck(self, job: JobRecord) -> Optional[JobResult]:
        status = await self.ctx.calendar.is_market_open()
        if not status.is_open:
            bg_logger.info(f"{self.name}: market closed ({status.reason}), skipping")
            return JobResult.skipped(status.reason)
        return None

    async def run_locked(self, job: JobRecord) -> JobResult:
        ctx = self.ctx
        quotes = await ctx.indices_provider.fetch()

        if not await self.still_owner():
            return self.aborted(fetched=len(quotes))

        written = await ctx.snapshots.upsert_many(quotes, is_market_open=True)
        points = await ctx.index_history.append(quotes)

        payload = snapshot_payload(await ctx.snapshots.all())
        await ctx.cache.set(CACHE_KEYS["indices_latest"], payload, ctx.settings.indices_cache_ttl_open)

        # Broadcast only after the stores hold the data
        delivered = await ctx.broadcaster.publish(
            MARKET_UPDATE_EVENT,
            {"indices": payload, "timestamp": to_naive_utc(ctx.clock()).isoformat()},
        )
        bg_logger.info(f"{self.name}: {written} snapshots, {points} history points, {delivered} subscribers")
        return JobResult(
            success=True,
            data={"fetched": len(quotes), "updated": written, "historyPoints": points},
        )
