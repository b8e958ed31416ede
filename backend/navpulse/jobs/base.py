"""
Shared shape of pipeline jobs.

A job is a callable taking the queued ``JobRecord`` and returning a
``JobResult``. Expected non-events (market closed, lock held) come back as
skipped results; real failures raise so the queue can retry them.
"""
from __future__ import annotations

from typing import Optional

from navpulse.core.logging_config import get_background_logger
from navpulse.scheduler.queue import JobRecord
from navpulse.services.lock import LOCK_KEYS
from navpulse.services.models import JobResult

bg_logger = get_background_logger()

LOCK_HELD = "Lock held by another instance"
LOCK_LOST = "Lock lost before write"


class PipelineJob:
    name = "job"

    def __init__(self, ctx):
        self.ctx = ctx

    async def __call__(self, job: JobRecord) -> JobResult:
        return await self.run(job)

    async def run(self, job: JobRecord) -> JobResult:
        raise NotImplementedError


class LockedJob(PipelineJob):
    """
    Runs ``run_locked`` while holding the job's distributed lock.

    The lock is released on every exit path. ``run_locked`` must call
    ``still_owner()`` before writing anything that assumes exclusivity.
    """

    lock_name = ""

    @property
    def lock_key(self) -> str:
        return LOCK_KEYS[self.lock_name]

    def lock_ttl(self) -> int:
        raise NotImplementedError

    async def precheck(self, job: JobRecord) -> Optional[JobResult]:
        """Return a result to skip the run before the lock is taken."""
        return None

    async def run(self, job: JobRecord) -> JobResult:
        skipped = await self.precheck(job)
        if skipped is not None:
            return skipped

        if not await self.ctx.lock.acquire(self.lock_key, self.lock_ttl()):
            bg_logger.info(f"{self.name}: {self.lock_key} is held elsewhere, skipping")
            return JobResult.skipped(LOCK_HELD)

        try:
            return await self.run_locked(job)
        finally:
            await self.ctx.lock.release(self.lock_key)

    async def run_locked(self, job: JobRecord) -> JobResult:
        raise NotImplementedError

    async def still_owner(self) -> bool:
        if await self.ctx.lock.owns(self.lock_key):
            return True
        bg_logger.warning(f"{self.name}: lost {self.lock_key} before writing, discarding run")
        return False

    @staticmethod
    def aborted(**data) -> JobResult:
        return JobResult(success=False, action="aborted", reason=LOCK_LOST, data=data)
