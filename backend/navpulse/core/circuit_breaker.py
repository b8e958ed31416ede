"""
Thread-safe circuit breaker for flaky dependencies.

Two kinds of dependency sit behind one:
- the Redis tier of the tiered cache; an open circuit there means the
  primary is unavailable and reads/writes go straight to the database
- each upstream market-data provider, so a provider that keeps failing
  is not hit again on every job retry

CLOSED lets calls through, OPEN rejects them until ``recovery_timeout``
has passed, HALF_OPEN lets ``half_open_max_calls`` probes through and
closes again on the first success.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from navpulse.core.logging_config import get_main_logger

logger = get_main_logger()


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 2      # consecutive failures before opening
    recovery_timeout: float = 30.0  # seconds spent OPEN before probing
    half_open_max_calls: int = 1


class CircuitOpenError(Exception):
    """
    Raised instead of calling a dependency whose circuit is open.

    Jobs treat it as a retryable failure; the API maps it to 503 with the
    breaker's remaining cool-down as ``retry_after``.
    """

    def __init__(self, dependency: str, retry_after: Optional[float] = None):
        self.dependency = dependency
        self.retry_after = retry_after
        message = f"{dependency} unavailable (circuit open)"
        if retry_after is not None:
            message += f", retry in {retry_after:.0f}s"
        super().__init__(message)


class CircuitBreaker:
    """
    Usage::

        breaker = CircuitBreaker(name="nse-indices")
        breaker.guard()
        try:
            response = await client.get(url)
        except httpx.HTTPError:
            breaker.record_failure()
            raise
        breaker.record_success()
    """

    def __init__(
        self,
        config: CircuitBreakerConfig = None,
        name: str = "default",
        timer: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._timer = timer
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._trips = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def retry_after(self) -> Optional[float]:
        """Seconds left before the next probe is allowed, None unless OPEN."""
        with self._lock:
            self._maybe_half_open()
            if self._state != CircuitState.OPEN:
                return None
            return max(0.0, self.config.recovery_timeout - (self._timer() - self._opened_at))

    def can_proceed(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls < self.config.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    def guard(self) -> None:
        """Raise CircuitOpenError unless a call may proceed."""
        if not self.can_proceed():
            raise CircuitOpenError(self.name, self.retry_after)

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker [{self.name}]: HALF_OPEN -> CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker [{self.name}]: probe failed, HALF_OPEN -> OPEN")
                self._open()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
                logger.warning(
                    f"Circuit breaker [{self.name}]: CLOSED -> OPEN "
                    f"after {self._failure_count} failure(s), probing again in {self.config.recovery_timeout}s"
                )
                self._open()

    def reset(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info(f"Circuit breaker [{self.name}]: reset to CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._half_open_calls = 0

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._timer()
        self._half_open_calls = 0
        self._trips += 1

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN:
            return
        if self._timer() - self._opened_at >= self.config.recovery_timeout:
            logger.info(f"Circuit breaker [{self.name}]: OPEN -> HALF_OPEN")
            self._state = CircuitState.HALF_OPEN
            self._half_open_calls = 0

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self.state.value,
                "failures": self._failure_count,
                "trips": self._trips,
                "retry_after": self.retry_after,
            }
