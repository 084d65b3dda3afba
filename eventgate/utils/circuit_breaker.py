"""
Circuit Breaker for Downstream Degradation

Processors wrap calls to downstream services (messaging APIs, payment
gateways) in a breaker. Once consecutive failures cross the threshold the
circuit opens, and the worker defers jobs for that processor instead of
burning their retry budget against a service that is known to be down.
"""

import asyncio
from enum import Enum
from datetime import datetime
from dataclasses import dataclass
from typing import Optional, Callable, TypeVar, Awaitable, Type
from eventgate.config import get_settings
from eventgate.utils.observability import logger
from eventgate.utils.time import Clock, utc_now

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation, calls flow through
    OPEN = "open"          # Failing, reject calls immediately
    HALF_OPEN = "half_open"  # Probing whether the service recovered


@dataclass
class CircuitStats:
    """Circuit breaker statistics."""
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    rejected_calls: int = 0
    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    state_changes: int = 0


class CircuitOpenError(Exception):
    """Raised when the circuit rejects a call."""

    def __init__(self, name: str):
        super().__init__(f"Circuit '{name}' is open")
        self.name = name


class CircuitBreaker:
    """
    Circuit breaker for protecting against cascading failures.

    States:
    - CLOSED: Normal operation. Failures are counted.
    - OPEN: Service is down. Calls are rejected with CircuitOpenError.
    - HALF_OPEN: Testing recovery. A limited number of probes is allowed.

    Usage:
        breaker = CircuitBreaker(name="payments")

        try:
            result = await breaker.call(lambda: gateway.capture(charge_id))
        except CircuitOpenError:
            # defer the job, the gateway is known to be down
            ...
    """

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        recovery_timeout: Optional[float] = None,
        half_open_max_calls: Optional[int] = None,
        excluded_exceptions: tuple[Type[BaseException], ...] = (),
        clock: Clock = utc_now,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Identifier for this circuit (for logging)
            failure_threshold: Consecutive failures before opening
            recovery_timeout: Seconds before trying recovery
            half_open_max_calls: Max calls allowed in half-open state
            excluded_exceptions: Errors that propagate without counting as
                either a failure or a success
            clock: Source of the current UTC time
        """
        settings = get_settings()
        self.name = name
        self._failure_threshold = failure_threshold or settings.circuit_breaker_failure_threshold
        self._recovery_timeout = recovery_timeout or settings.circuit_breaker_recovery_timeout
        self._half_open_max_calls = half_open_max_calls or settings.circuit_breaker_half_open_max_calls
        self._excluded = excluded_exceptions
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._stats = CircuitStats()
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        return self._state

    @property
    def stats(self) -> CircuitStats:
        """Circuit statistics."""
        return self._stats

    async def is_open(self) -> bool:
        """
        True while calls would be rejected.

        Moves OPEN to HALF_OPEN once the recovery timeout has elapsed, so a
        caller polling this sees the circuit admit a probe.
        """
        async with self._lock:
            self._check_state_transition()
            if self._state == CircuitState.OPEN:
                return True
            if self._state == CircuitState.HALF_OPEN:
                return self._half_open_calls >= self._half_open_max_calls
            return False

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute function through circuit breaker.

        Raises:
            CircuitOpenError: When the circuit is open or the half-open
                probe budget is spent
        """
        async with self._lock:
            self._check_state_transition()

            if self._state == CircuitState.OPEN:
                self._stats.rejected_calls += 1
                logger.warning(f"Circuit '{self.name}' is OPEN, rejecting call")
                raise CircuitOpenError(self.name)

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self._half_open_max_calls:
                    self._stats.rejected_calls += 1
                    logger.warning(f"Circuit '{self.name}' HALF_OPEN limit reached, rejecting call")
                    raise CircuitOpenError(self.name)
                self._half_open_calls += 1

        # Execute outside lock to allow concurrency
        try:
            result = await func()
        except self._excluded:
            await self._release_probe()
            raise
        except Exception as e:
            await self._record_failure(e)
            raise

        await self._record_success()
        return result

    async def record_failure(self, reason: str) -> None:
        """Count a failure observed outside call(), e.g. reported by a webhook."""
        await self._record_failure(RuntimeError(reason))

    async def _release_probe(self) -> None:
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    def _check_state_transition(self) -> None:
        """Check if state should transition based on time."""
        if self._state != CircuitState.OPEN or not self._stats.opened_at:
            return

        elapsed = (self._clock() - self._stats.opened_at).total_seconds()
        if elapsed >= self._recovery_timeout:
            self._transition_to(CircuitState.HALF_OPEN)
            self._half_open_calls = 0

    async def _record_success(self) -> None:
        async with self._lock:
            self._stats.consecutive_failures = 0
            self._stats.total_successes += 1
            self._stats.last_success_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}' recovered, closing")
                self._transition_to(CircuitState.CLOSED)

    async def _record_failure(self, error: Exception) -> None:
        async with self._lock:
            self._stats.consecutive_failures += 1
            self._stats.total_failures += 1
            self._stats.last_failure_time = self._clock()

            logger.warning(
                f"Circuit '{self.name}' failure {self._stats.consecutive_failures}/{self._failure_threshold}: {error}"
            )

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit '{self.name}' probe failed, reopening")
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._stats.consecutive_failures >= self._failure_threshold:
                logger.error(f"Circuit '{self.name}' threshold reached, opening")
                self._transition_to(CircuitState.OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._stats.state_changes += 1

        if new_state == CircuitState.OPEN:
            self._stats.opened_at = self._clock()

        logger.info(f"Circuit '{self.name}' state: {old_state.value} -> {new_state.value}")

    async def reset(self) -> None:
        """Manually reset circuit to closed state."""
        async with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._stats.consecutive_failures = 0
            self._half_open_calls = 0

    async def force_open(self) -> None:
        """Manually open circuit (for testing/maintenance)."""
        async with self._lock:
            self._transition_to(CircuitState.OPEN)

    def get_status(self) -> dict:
        """Get circuit status for monitoring."""
        return {
            "name": self.name,
            "state": self._state.value,
            "consecutive_failures": self._stats.consecutive_failures,
            "total_failures": self._stats.total_failures,
            "total_successes": self._stats.total_successes,
            "rejected_calls": self._stats.rejected_calls,
            "failure_threshold": self._failure_threshold,
            "recovery_timeout_seconds": self._recovery_timeout,
            "last_failure": self._stats.last_failure_time.isoformat() if self._stats.last_failure_time else None,
            "last_success": self._stats.last_success_time.isoformat() if self._stats.last_success_time else None,
            "opened_at": self._stats.opened_at.isoformat() if self._stats.opened_at else None,
        }

