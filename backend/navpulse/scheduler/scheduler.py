"""
Job scheduler: job definitions, their tickers and the manual trigger.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import timezone
from typing import Dict, List, Optional, Tuple, Type, Union

from navpulse.core.clock import Clock, system_clock
from navpulse.core.logging_config import get_background_logger, get_main_logger
from navpulse.scheduler.queue import (
    PRIORITY_MANUAL,
    PRIORITY_SCHEDULED,
    AlertHook,
    JobQueue,
    JobRecord,
    RetryPolicy,
    Worker,
)
from navpulse.scheduler.schedules import DailySchedule, IntervalSchedule
from navpulse.services.job_status import JobStatusRegistry

logger = get_main_logger()
bg_logger = get_background_logger()

Schedule = Union[IntervalSchedule, DailySchedule]


class UnknownJobError(Exception):
    """No job is registered under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown job: {name}")


@dataclass
class JobDefinition:
    name: str
    worker: Worker
    retry_policy: RetryPolicy
    schedule: Optional[Schedule] = None
    description: str = ""


async def log_alert(job: JobRecord) -> None:
    """Default alert hook."""
    bg_logger.error(f"ALERT: {job.name} job {job.id} exhausted retries: {job.error}")


class JobScheduler:
    """
    Owns one queue per job type and one ticker per scheduled job.

    Scheduled ticks and manual triggers go through the same queue, so both
    pass the job's own calendar and lock checks.
    """

    def __init__(
        self,
        status: Optional[JobStatusRegistry] = None,
        alert_hook: Optional[AlertHook] = log_alert,
        expected_errors: Tuple[Type[BaseException], ...] = (),
        clock: Clock = system_clock,
    ):
        self.status = status or JobStatusRegistry()
        self._alert_hook = alert_hook
        self._expected_errors = expected_errors
        self._clock = clock
        self._definitions: Dict[str, JobDefinition] = {}
        self._queues: Dict[str, JobQueue] = {}
        self._tickers: List[asyncio.Task] = []
        self._started = False

    def register(self, definition: JobDefinition) -> JobQueue:
        if definition.name in self._definitions:
            raise ValueError(f"Job already registered: {definition.name}")
        queue = JobQueue(
            definition.name,
            definition.worker,
            definition.retry_policy,
            self.status,
            alert_hook=self._alert_hook,
            expected_errors=self._expected_errors,
        )
        self._definitions[definition.name] = definition
        self._queues[definition.name] = queue
        if self._started:
            queue.start()
        return queue

    def queue(self, name: str) -> JobQueue:
        try:
            return self._queues[name]
        except KeyError:
            raise UnknownJobError(name) from None

    @property
    def schedules_active(self) -> bool:
        return any(not task.done() for task in self._tickers)

    def start(self, with_schedules: bool = True) -> None:
        """Start every queue worker, and the tickers unless ``with_schedules`` is False."""
        if self._started:
            return
        self._started = True
        for queue in self._queues.values():
            queue.start()
        if with_schedules:
            for definition in self._definitions.values():
                if definition.schedule is not None:
                    self._tickers.append(
                        asyncio.create_task(self._tick_loop(definition), name=f"ticker:{definition.name}")
                    )
                    logger.info(f"Scheduled {definition.name}: {definition.schedule.describe()}")

    async def stop(self) -> None:
        for task in self._tickers:
            task.cancel()
        await asyncio.gather(*self._tickers, return_exceptions=True)
        self._tickers.clear()
        for queue in self._queues.values():
            await queue.stop()
        self._started = False
        logger.info("Job scheduler stopped")

    def enqueue(self, name: str, data: Optional[dict] = None, priority: int = PRIORITY_SCHEDULED,
                manual: bool = False) -> JobRecord:
        return self.queue(name).add(data, priority=priority, manual=manual)

    def trigger_job(self, name: str, data: Optional[dict] = None) -> JobRecord:
        """Operator re-run: jumps ahead of scheduled jobs of the same type."""
        job = self.enqueue(name, data, priority=PRIORITY_MANUAL, manual=True)
        logger.info(f"Manual trigger: {name} job {job.id}")
        return job

    def get_job_stats(self) -> Dict[str, dict]:
        stats = self.status.get_status_dict()
        for name, definition in self._definitions.items():
            entry = stats.setdefault(name, {})
            entry["schedule"] = definition.schedule.describe() if definition.schedule else None
            entry["description"] = definition.description
        return stats

    async def _tick_loop(self, definition: JobDefinition) -> None:
        queue = self._queues[definition.name]
        while True:
            now = self._clock()
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
            next_run = definition.schedule.next_after(now)
            await asyncio.sleep(max(0.0, (next_run - now).total_seconds()))
            if queue.waiting_count:
                bg_logger.debug(f"{definition.name} tick skipped, a run is already waiting")
                continue
            queue.add()
