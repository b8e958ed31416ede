"""
In-process job queue, one per job type.

Each queue owns a priority queue and a single worker coroutine, so runs of
the same job type never overlap inside one process. An exception raised by
a job is caught here and the job is redriven after its retry delay; once
retries are exhausted the job is marked failed and the alert hook fires.
Nothing a job raises escapes into the event loop.
"""
from __future__ import annotations

import asyncio
import itertools
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple, Type

from navpulse.core.logging_config import (
    get_background_logger,
    log_background_complete,
    log_background_error,
    log_background_start,
)
from navpulse.services.job_status import JobStatusRegistry
from navpulse.services.models import JobResult

bg_logger = get_background_logger()

PRIORITY_MANUAL = 1
PRIORITY_SCHEDULED = 10

KEEP_COMPLETED = 10
KEEP_FAILED = 50


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    """
    Retries after the first attempt.

    ``backoff="fixed"`` waits ``delay_seconds`` before every retry;
    ``"incremental"`` waits ``delay_seconds * n`` before retry ``n``.
    """
    max_retries: int = 3
    delay_seconds: float = 60.0
    backoff: str = "fixed"

    def __post_init__(self):
        if self.backoff not in ("fixed", "incremental"):
            raise ValueError(f"Unknown backoff: {self.backoff}")

    def delay_for(self, retry_number: int) -> float:
        if self.backoff == "incremental":
            return self.delay_seconds * retry_number
        return self.delay_seconds


@dataclass(eq=False)
class JobRecord:
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    priority: int = PRIORITY_SCHEDULED
    manual: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: JobState = JobState.WAITING
    attempts: int = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    async def wait(self, timeout: Optional[float] = None) -> "JobRecord":
        """Block until the job completes or fails for good."""
        await asyncio.wait_for(self._done.wait(), timeout)
        return self


Worker = Callable[[JobRecord], Awaitable[JobResult]]
AlertHook = Callable[[JobRecord], Awaitable[None]]


class JobQueue:
    """Priority queue plus one worker for a single job type."""

    def __init__(
        self,
        name: str,
        worker: Worker,
        retry_policy: RetryPolicy,
        status: JobStatusRegistry,
        alert_hook: Optional[AlertHook] = None,
        expected_errors: Tuple[Type[BaseException], ...] = (),
    ):
        self.name = name
        self.retry_policy = retry_policy
        self._worker = worker
        self._status = status
        self._alert_hook = alert_hook
        self._expected_errors = expected_errors
        self._queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._worker_task: Optional[asyncio.Task] = None
        self._delayed: Set[asyncio.Task] = set()
        self.completed: Deque[JobRecord] = deque(maxlen=KEEP_COMPLETED)
        self.failed: Deque[JobRecord] = deque(maxlen=KEEP_FAILED)
        status.register(name)

    @property
    def waiting_count(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._worker_task is not None and not self._worker_task.done()

    def add(self, data: Optional[dict] = None, priority: int = PRIORITY_SCHEDULED, manual: bool = False) -> JobRecord:
        job = JobRecord(name=self.name, data=dict(data or {}), priority=priority, manual=manual)
        self._put(job)
        bg_logger.debug(f"Queued {self.name} job {job.id} (priority={priority}, manual={manual})")
        return job

    def _put(self, job: JobRecord) -> None:
        job.state = JobState.WAITING
        self._status.job_waiting(self.name)
        self._queue.put_nowait((job.priority, next(self._seq), job))

    def start(self) -> None:
        if not self.running:
            self._worker_task = asyncio.create_task(self._run(), name=f"queue:{self.name}")

    async def stop(self) -> None:
        tasks = list(self._delayed)
        delayed = len(tasks)
        if self._worker_task is not None:
            tasks.append(self._worker_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._worker_task = None

        # Jobs that never ran are discarded, not persisted
        for _ in range(delayed):
            self._status.job_dropped(self.name)
        self._delayed.clear()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            self._status.job_dropped(self.name)

    async def _run(self) -> None:
        while True:
            _, _, job = await self._queue.get()
            try:
                await self.process(job)
            finally:
                self._queue.task_done()

    async def process(self, job: JobRecord) -> None:
        """Run one attempt of ``job`` and settle its state."""
        job.state = JobState.ACTIVE
        job.attempts += 1
        self._status.job_started(self.name)
        log_background_start(self.name, job.id, job.attempts, job.manual)
        started = time.monotonic()

        try:
            result = await self._worker(job)
        except self._expected_errors as e:
            bg_logger.warning(f"{self.name} job {job.id} attempt {job.attempts} failed: {e}")
            await self._handle_failure(job, e)
            return
        except Exception as e:
            bg_logger.exception(f"Unexpected error in {self.name} job {job.id}: {e}")
            await self._handle_failure(job, e)
            return

        job.result = result.to_dict() if isinstance(result, JobResult) else dict(result or {})
        job.state = JobState.COMPLETED
        job.error = None
        job.finished_at = datetime.now(timezone.utc)
        self._status.job_completed(self.name, job.result)
        self.completed.append(job)
        job._done.set()

        summary = job.result.get("action", "completed")
        if job.result.get("reason"):
            summary += f": {job.result['reason']}"
        log_background_complete(self.name, job.id, summary, time.monotonic() - started)

    async def _handle_failure(self, job: JobRecord, error: BaseException) -> None:
        job.error = f"{type(error).__name__}: {error}"
        retries_used = job.attempts - 1

        if retries_used < self.retry_policy.max_retries:
            delay = self.retry_policy.delay_for(retries_used + 1)
            job.state = JobState.DELAYED
            self._status.job_delayed(self.name, job.error)
            bg_logger.info(
                f"Retrying {self.name} job {job.id} in {delay:.0f}s "
                f"(retry {retries_used + 1}/{self.retry_policy.max_retries})"
            )
            task = asyncio.create_task(self._requeue_later(job, delay))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
            return

        job.state = JobState.FAILED
        job.finished_at = datetime.now(timezone.utc)
        self._status.job_failed(self.name, job.error)
        self.failed.append(job)
        job._done.set()
        log_background_error(self.name, job.id, job.error, job.attempts)

        if self._alert_hook is not None:
            try:
                await self._alert_hook(job)
            except Exception as e:
                bg_logger.error(f"Alert hook failed for {self.name} job {job.id}: {e}")

    async def _requeue_later(self, job: JobRecord, delay: float) -> None:
        await asyncio.sleep(delay)
        self._status.job_redriven(self.name)
        # job_redriven already counted it as waiting
        job.state = JobState.WAITING
        self._queue.put_nowait((job.priority, next(self._seq), job))
