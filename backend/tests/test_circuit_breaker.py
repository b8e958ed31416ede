import pytest

from navpulse.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
)


class FakeTimer:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def timer():
    return FakeTimer()


def test_opens_after_threshold(timer):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2, recovery_timeout=60), "nse", timer)

    breaker.record_failure()
    assert breaker.can_proceed()
    breaker.record_failure()

    assert breaker.is_open
    assert not breaker.can_proceed()
    timer.now += 15
    assert breaker.retry_after == 45


def test_guard_raises_with_retry_after(timer):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, recovery_timeout=120), "amfi", timer)
    breaker.record_failure()

    with pytest.raises(CircuitOpenError) as info:
        breaker.guard()
    assert info.value.dependency == "amfi"
    assert info.value.retry_after == 120


def test_success_resets_failure_count(timer):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2), timer=timer)
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED


def test_half_open_allows_one_probe(timer):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, recovery_timeout=30), timer=timer)
    breaker.record_failure()
    timer.now += 30

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.retry_after is None
    assert breaker.can_proceed()
    assert not breaker.can_proceed()

    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED


def test_failed_probe_reopens(timer):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1, recovery_timeout=30), timer=timer)
    breaker.record_failure()
    timer.now += 31
    assert breaker.can_proceed()

    breaker.record_failure()
    stats = breaker.get_stats()
    assert stats["state"] == "open"
    assert stats["trips"] == 2
    assert stats["retry_after"] == 30


def test_reset(timer):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=1), timer=timer)
    breaker.record_failure()
    assert breaker.is_open
    breaker.reset()
    assert breaker.can_proceed()
