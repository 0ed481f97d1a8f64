"""Circuit breaker around a downstream provider.

States:
1. CLOSED: calls pass through; outcomes are counted in a rolling window
2. OPEN: calls fail fast without reaching the provider
3. HALF_OPEN: one trial call is let through to test recovery

State transitions:
- CLOSED -> OPEN: failures reach error_threshold_percentage of the calls in the
  rolling window, once at least volume_threshold calls were made
- OPEN -> HALF_OPEN: after reset_timeout_seconds
- HALF_OPEN -> CLOSED: the trial call succeeds
- HALF_OPEN -> OPEN: the trial call fails
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable, Any, Optional, List

from notification.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class _Bucket:
    __slots__ = ("start", "successes", "failures")

    def __init__(self, start: float):
        self.start = start
        self.successes = 0
        self.failures = 0


class CircuitBreaker:
    """Circuit breaker with a bucketed rolling window.

    Args:
        name: Name of the circuit (typically the channel or provider)
        error_threshold_percentage: Failure share that opens the circuit
        reset_timeout_seconds: Time spent OPEN before a trial call is allowed
        rolling_window_seconds: Length of the statistics window
        rolling_buckets: Number of buckets the window is split into
        volume_threshold: Minimum calls in the window before it may open
        clock: Monotonic time source
    """

    def __init__(
        self,
        name: str,
        error_threshold_percentage: float = 50.0,
        reset_timeout_seconds: float = 30.0,
        rolling_window_seconds: float = 10.0,
        rolling_buckets: int = 10,
        volume_threshold: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ):
        if rolling_buckets < 1:
            raise ValueError("rolling_buckets must be >= 1")
        self.name = name
        self.error_threshold_percentage = error_threshold_percentage
        self.reset_timeout_seconds = reset_timeout_seconds
        self.rolling_window_seconds = rolling_window_seconds
        self.volume_threshold = max(1, volume_threshold)
        self._bucket_width = rolling_window_seconds / rolling_buckets
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._buckets: List[_Bucket] = []
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute func through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open (func is not called)
            Exception: Whatever func raises
        """
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                remaining = self.reset_timeout_seconds - (self._clock() - self._opened_at)
                logger.warning(f"Circuit '{self.name}' is OPEN, failing fast (retry in {remaining:.1f}s)")
                raise CircuitOpenError(
                    f"Circuit breaker '{self.name}' is OPEN. Retry in {max(0, int(remaining))} seconds.",
                    channel=self.name,
                )
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(
                        f"Circuit breaker '{self.name}' is HALF_OPEN (trial call in progress).",
                        channel=self.name,
                    )
                self._trial_in_flight = True

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def _current_bucket(self, now: float) -> _Bucket:
        start = now - (now % self._bucket_width) if self._bucket_width else now
        if not self._buckets or self._buckets[-1].start != start:
            self._buckets.append(_Bucket(start))
        cutoff = now - self.rolling_window_seconds
        while self._buckets and self._buckets[0].start + self._bucket_width <= cutoff:
            self._buckets.pop(0)
        return self._buckets[-1]

    def _window_counts(self):
        successes = sum(b.successes for b in self._buckets)
        failures = sum(b.failures for b in self._buckets)
        return successes, failures

    def _on_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}' trial call succeeded")
                self._transition_to_closed()
                return
            self._current_bucket(self._clock()).successes += 1

    def _on_failure(self, exc: Exception) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit '{self.name}' trial call failed: {exc}")
                self._transition_to_open(now)
                return

            self._current_bucket(now).failures += 1
            if self._state == CircuitState.OPEN:
                # a call admitted before another thread opened the circuit
                return
            successes, failures = self._window_counts()
            total = successes + failures
            percentage = 100.0 * failures / total
            if total >= self.volume_threshold and percentage >= self.error_threshold_percentage:
                logger.error(
                    f"Circuit '{self.name}' threshold exceeded: {failures}/{total} failures "
                    f"({percentage:.0f}% >= {self.error_threshold_percentage:.0f}%)"
                )
                self._transition_to_open(now)
            else:
                logger.debug(f"Circuit '{self.name}' failure {failures}/{total}: {exc}")

    def _maybe_half_open(self) -> None:
        if self._state == CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout_seconds:
            logger.info(f"Circuit '{self.name}' half-open, allowing a trial call")
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False

    def _transition_to_closed(self) -> None:
        logger.info(f"Circuit '{self.name}' closed, resuming normal operation")
        self._state = CircuitState.CLOSED
        self._buckets.clear()
        self._opened_at = None
        self._trial_in_flight = False

    def _transition_to_open(self, now: float) -> None:
        logger.warning(f"Circuit '{self.name}' opened for {self.reset_timeout_seconds}s")
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False

    def get_stats(self) -> dict:
        """Get circuit breaker statistics."""
        with self._lock:
            self._maybe_half_open()
            successes, failures = self._window_counts()
            return {
                "name": self.name,
                "state": self._state.value,
                "successes": successes,
                "failures": failures,
                "opened_at": self._opened_at,
            }

    def reset(self) -> None:
        """Manually close the breaker."""
        with self._lock:
            self._transition_to_closed()
