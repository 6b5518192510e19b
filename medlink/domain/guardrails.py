"""Domain Guardrails - Per-Hospital Circuit Breaker.

This module protects federated queries from repeatedly waiting on a hospital
that is known to be failing. Each hospital gets its own CircuitBreaker that
monitors the outcome of recent fetches; once the failure rate crosses the
threshold the breaker opens and the orchestrator stops contacting that
hospital until a cooldown has elapsed.

Security Impact:
    - Keeps one failing hospital from degrading response time for every query
    - Reduces log noise from repeated failures
    - An open breaker yields an explicit error bundle, so partial results stay visible

Architecture:
    - Pure domain logic with no infrastructure dependencies
    - Thread-safe: breaker state is guarded by a lock
    - Half-open after cooldown: one trial call decides whether to close again
"""

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class CircuitBreakerConfig:
    """Configuration for CircuitBreaker behavior.

    Attributes:
        failure_threshold_percent: Percentage of failures that triggers circuit open (0-100)
        window_size: Number of recent fetches to evaluate in the sliding window
        min_calls_before_check: Minimum fetches recorded before checking threshold
        cooldown_seconds: How long an open circuit rejects calls before a trial call
    """
    failure_threshold_percent: float = 50.0
    window_size: int = 10
    min_calls_before_check: int = 3
    cooldown_seconds: float = 30.0


class CircuitBreaker:
    """Circuit Breaker for one hospital's store.

    Key Features:
        - Sliding window: Only considers the last N fetches
        - Cooldown: An open circuit allows a single trial call after cooldown
        - Thread-safe: Uses a lock for concurrent access

    Example Usage:
        ```python
        breaker = CircuitBreaker("hospital-kl")

        if not breaker.allow_request():
            return error_bundle("circuit open")
        try:
            bundle = await fetch()
            breaker.record_success()
        except Exception:
            breaker.record_failure()
        ```
    """

    def __init__(
        self,
        hospital_id: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize CircuitBreaker.

        Parameters:
            hospital_id: Hospital this breaker guards (used in log lines)
            config: CircuitBreaker configuration (uses defaults if None)
            clock: Monotonic clock, injectable for tests
        """
        self.hospital_id = hospital_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._results: list[bool] = []  # True for success, False for failure
        self._lock = Lock()
        self._is_open = False
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._total_calls = 0
        self._total_failures = 0

    def allow_request(self) -> bool:
        """Return True if a fetch may be dispatched to this hospital now.

        While open, requests are rejected until the cooldown elapses; after
        that exactly one trial request is let through at a time.
        """
        with self._lock:
            if not self._is_open:
                return True
            elapsed = self._clock() - (self._opened_at or 0.0)
            if elapsed >= self.config.cooldown_seconds and not self._trial_in_flight:
                self._trial_in_flight = True
                logger.info(f"CircuitBreaker HALF-OPEN for {self.hospital_id}: allowing trial call")
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self._record(True)
            if self._is_open and self._trial_in_flight:
                self._close()

    def record_failure(self) -> None:
        with self._lock:
            self._record(False)
            if self._is_open:
                # Failed trial call: restart the cooldown
                self._trial_in_flight = False
                self._opened_at = self._clock()
                return
            if self._total_calls >= self.config.min_calls_before_check:
                self._check_threshold()

    def release_trial(self) -> None:
        """Give back a trial slot whose call ended without an outcome.

        A cancelled trial says nothing about the hospital, so the breaker stays
        open and the next request after cooldown may try again.
        """
        with self._lock:
            if self._is_open and self._trial_in_flight:
                self._trial_in_flight = False
                logger.info(f"CircuitBreaker trial for {self.hospital_id} cancelled; slot released")

    def _record(self, success: bool) -> None:
        self._results.append(success)
        self._total_calls += 1
        if not success:
            self._total_failures += 1
        while len(self._results) > self.config.window_size:
            self._results.pop(0)

    def _failure_rate(self) -> float:
        if not self._results:
            return 0.0
        failures = sum(1 for r in self._results if not r)
        return failures / len(self._results) * 100.0

    def _check_threshold(self) -> None:
        failure_rate = self._failure_rate()
        if failure_rate >= self.config.failure_threshold_percent:
            self._is_open = True
            self._opened_at = self._clock()
            self._trial_in_flight = False
            logger.error(
                f"CircuitBreaker OPEN for {self.hospital_id}: failure rate {failure_rate:.1f}% "
                f"exceeds threshold {self.config.failure_threshold_percent}% "
                f"(total: {self._total_failures}/{self._total_calls})"
            )

    def _close(self) -> None:
        self._is_open = False
        self._opened_at = None
        self._trial_in_flight = False
        self._results.clear()
        logger.info(f"CircuitBreaker CLOSED for {self.hospital_id}: trial call succeeded")

    def is_open(self) -> bool:
        """Check if circuit breaker is currently open."""
        with self._lock:
            return self._is_open

    def reset(self) -> None:
        """Reset the circuit breaker to its initial closed state."""
        with self._lock:
            self._results.clear()
            self._is_open = False
            self._opened_at = None
            self._trial_in_flight = False
            self._total_calls = 0
            self._total_failures = 0
            logger.info(f"CircuitBreaker reset for {self.hospital_id}")

    def get_statistics(self) -> dict:
        """Get current statistics about the circuit breaker.

        Returns:
            dict: is_open, total_calls, total_failures, calls_in_window,
                failure_rate and threshold
        """
        with self._lock:
            return {
                'is_open': self._is_open,
                'total_calls': self._total_calls,
                'total_failures': self._total_failures,
                'calls_in_window': len(self._results),
                'failure_rate': self._failure_rate(),
                'threshold': self.config.failure_threshold_percent,
            }
