"""
Thread-safe job status tracking for the scheduler.

All state modifications are protected by RLock so API handlers, job
workers and the scheduler ticker can read and update counts concurrently.
"""
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional


@dataclass
class JobStats:
    """Counts and last outcome for one job type (immutable snapshot)."""
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    last_run: Optional[str] = None
    last_result: Optional[dict] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "delayed": self.delayed,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "lastRun": self.last_run,
            "lastResult": self.last_result,
            "lastError": self.last_error,
        }


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatusRegistry:
    """
    Per-job-type counters.

    A job moves waiting -> active -> (delayed -> waiting ->)* -> completed
    or failed. Skipped runs count as completed and are also counted in
    ``skipped``.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._stats: Dict[str, JobStats] = {}

    def _get(self, name: str) -> JobStats:
        if name not in self._stats:
            self._stats[name] = JobStats()
        return self._stats[name]

    def register(self, name: str) -> None:
        with self._lock:
            self._get(name)

    def job_waiting(self, name: str) -> None:
        with self._lock:
            self._get(name).waiting += 1

    def job_started(self, name: str) -> None:
        with self._lock:
            stats = self._get(name)
            stats.waiting = max(0, stats.waiting - 1)
            stats.active += 1
            stats.last_run = _now_iso()

    def job_delayed(self, name: str, error: str) -> None:
        """A failed attempt is waiting for its retry delay."""
        with self._lock:
            stats = self._get(name)
            stats.active = max(0, stats.active - 1)
            stats.delayed += 1
            stats.last_error = error

    def job_redriven(self, name: str) -> None:
        with self._lock:
            stats = self._get(name)
            stats.delayed = max(0, stats.delayed - 1)
            stats.waiting += 1

    def job_completed(self, name: str, result: dict) -> None:
        with self._lock:
            stats = self._get(name)
            stats.active = max(0, stats.active - 1)
            stats.completed += 1
            if result.get("action") == "skipped":
                stats.skipped += 1
            stats.last_result = result

    def job_failed(self, name: str, error: str) -> None:
        """Retries are exhausted."""
        with self._lock:
            stats = self._get(name)
            stats.active = max(0, stats.active - 1)
            stats.failed += 1
            stats.last_error = error

    def job_dropped(self, name: str) -> None:
        """A waiting or delayed job was discarded on shutdown."""
        with self._lock:
            stats = self._get(name)
            if stats.delayed:
                stats.delayed -= 1
            elif stats.waiting:
                stats.waiting -= 1

    def get(self, name: str) -> JobStats:
        """Copy of one job type's stats."""
        with self._lock:
            stats = self._get(name)
            return JobStats(**vars(stats))

    def get_status_dict(self) -> Dict[str, dict]:
        with self._lock:
            return {name: stats.to_dict() for name, stats in self._stats.items()}
