from navpulse.services.job_status import JobStatusRegistry
from navpulse.services.models import JobResult


def test_lifecycle_counts():
    registry = JobStatusRegistry()
    registry.job_waiting("daily-nav")
    registry.job_started("daily-nav")
    registry.job_delayed("daily-nav", "ProviderError: timeout")
    registry.job_redriven("daily-nav")
    registry.job_started("daily-nav")
    registry.job_completed("daily-nav", JobResult(success=True, data={"written": 5}).to_dict())

    stats = registry.get("daily-nav")
    assert (stats.waiting, stats.active, stats.delayed, stats.completed, stats.failed) == (0, 0, 0, 1, 0)
    assert stats.last_error == "ProviderError: timeout"
    assert stats.last_result == {"success": True, "action": "completed", "data": {"written": 5}}
    assert stats.last_run is not None


def test_skipped_and_failed():
    registry = JobStatusRegistry()
    registry.job_waiting("indices-refresh")
    registry.job_started("indices-refresh")
    registry.job_completed("indices-refresh", JobResult.skipped("Weekend").to_dict())
    registry.job_waiting("indices-refresh")
    registry.job_started("indices-refresh")
    registry.job_failed("indices-refresh", "boom")

    status = registry.get_status_dict()["indices-refresh"]
    assert status["completed"] == 1
    assert status["skipped"] == 1
    assert status["failed"] == 1
    assert status["lastError"] == "boom"
    assert status["lastResult"]["reason"] == "Weekend"


def test_dropped_prefers_delayed():
    registry = JobStatusRegistry()
    registry.job_waiting("x")
    registry.job_started("x")
    registry.job_delayed("x", "err")
    registry.job_waiting("x")

    registry.job_dropped("x")
    stats = registry.get("x")
    assert (stats.waiting, stats.delayed) == (1, 0)


def test_get_returns_copy():
    registry = JobStatusRegistry()
    registry.register("x")
    registry.get("x").completed = 99
    assert registry.get("x").completed == 0
