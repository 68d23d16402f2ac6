"""Circuit breaker guarding calls to an external provider.

State machine:
    CLOSED     calls pass; consecutive failures are counted, and reaching the
               threshold opens the circuit.
    OPEN       calls fail fast with CircuitOpenError until recovery_timeout
               has elapsed since the circuit opened.
    HALF_OPEN  exactly one trial call is let through. Success closes the
               circuit, failure re-opens it with a fresh timer.

Transitions happen under a threading.Lock that is never held while the
protected call runs, so one breaker can be shared by coroutines and threads.
"""

import asyncio
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from ..config import CircuitBreakerConfig
from ..errors import CircuitOpenError
from ..logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Consecutive-failure circuit breaker with a single half-open trial."""

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_time: float | None = None
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _maybe_half_open(self) -> None:
        # Caller holds the lock
        if self._state == CircuitState.OPEN and self._remaining() <= 0:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit '%s' half-open, allowing one trial call", self.name)

    def _remaining(self) -> float:
        if self._opened_at is None:
            return 0.0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self.config.recovery_timeout - elapsed)

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError."""
        if not self.config.enabled:
            return
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.OPEN:
                raise CircuitOpenError(self.name, self._remaining())
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True

    def record_success(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit '%s' closed after successful call", self.name)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        if not self.config.enabled:
            return
        with self._lock:
            now = self._clock()
            self._consecutive_failures += 1
            self._last_failure_time = now
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._opened_at = now
                self._trial_in_flight = False
                logger.warning("Circuit '%s' trial call failed, re-opening", self.name)
            elif (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.config.failure_threshold
            ):
                self._state = CircuitState.OPEN
                self._opened_at = now
                logger.warning(
                    "Circuit '%s' opened after %d consecutive failures",
                    self.name,
                    self._consecutive_failures,
                )

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    async def call(self, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` under the breaker. Any exception counts as a failure."""
        self.before_call()
        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            # A cancelled trial says nothing about provider health
            self._release_trial()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the circuit closed and clear failure history."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._last_failure_time = None
            self._opened_at = None
            self._trial_in_flight = False
        logger.info("Circuit '%s' manually reset", self.name)

    def snapshot(self) -> dict:
        """Get breaker state for health reporting."""
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "enabled": self.config.enabled,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self.config.failure_threshold,
                "remaining_seconds": self._remaining() if self._state == CircuitState.OPEN else 0.0,
            }
