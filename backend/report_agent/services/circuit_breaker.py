"""Circuit breaker guarding calls to the upstream LLM endpoint.

One breaker is built per process at startup and shared by every request, so all
state transitions happen under a single lock.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional

from report_agent.core.logging import logger


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    failure_window_seconds: float = 60.0
    reset_timeout_seconds: float = 30.0
    half_open_successes: int = 2
    half_open_max_probes: int = 3


class CircuitBreaker:
    """Sliding-window circuit breaker with a bounded half-open probe phase."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        name: str = "llm",
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures: Deque[float] = deque()
        self._opened_at: Optional[float] = None
        self._half_open_successes = 0
        self._half_open_in_flight = 0

    def can_execute(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._opened_at is not None and now - self._opened_at >= self.config.reset_timeout_seconds:
                    self._transition(CircuitState.HALF_OPEN)
                    self._half_open_in_flight = 1
                    return True
                return False

            if self._half_open_in_flight < self.config.half_open_max_probes:
                self._half_open_in_flight += 1
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.HALF_OPEN:
                return
            self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            self._half_open_successes += 1
            if self._half_open_successes >= self.config.half_open_successes:
                self._failures.clear()
                self._opened_at = None
                self._transition(CircuitState.CLOSED)

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                self._opened_at = now
                self._transition(CircuitState.OPEN, error=error)
                return

            self._failures.append(now)
            self._prune(now)
            if self._state == CircuitState.CLOSED and len(self._failures) >= self.config.failure_threshold:
                self._opened_at = now
                self._transition(CircuitState.OPEN, error=error)
            else:
                logger.warning(
                    "Upstream call failed",
                    circuit=self.name,
                    recent_failures=len(self._failures),
                    error=str(error) if error else None,
                )

    def get_state(self) -> CircuitState:
        with self._lock:
            return self._state

    def recent_failures(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._failures)

    def get_time_until_retry(self) -> float:
        """Seconds until an OPEN circuit admits a probe; 0 when calls are allowed."""
        with self._lock:
            if self._state != CircuitState.OPEN or self._opened_at is None:
                return 0.0
            elapsed = self._clock() - self._opened_at
            return max(0.0, self.config.reset_timeout_seconds - elapsed)

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()
            self._opened_at = None
            self._transition(CircuitState.CLOSED)

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.failure_window_seconds
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()

    def _transition(self, new_state: CircuitState, error: Optional[BaseException] = None) -> None:
        # Caller holds the lock.
        previous = self._state
        self._state = new_state
        self._half_open_successes = 0
        self._half_open_in_flight = 0
        if previous != new_state:
            logger.warning(
                "Circuit state changed",
                circuit=self.name,
                from_state=previous.value,
                to_state=new_state.value,
                error=str(error) if error else None,
            )
