"""
Circuit breaker for calls to external collaborators.

The notification outbox and the transaction service sit behind one each, so
an unhealthy dependency fails fast instead of stalling every send and accept.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import structlog

logger = structlog.get_logger()


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing fast
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreaker:
    """
    Async context manager guarding an external call.

    Usage:
        breaker = get_circuit_breaker("transactions")

        async with breaker:
            response = await client.post(...)
    """
    name: str
    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    half_open_requests: int = 1

    state: CircuitState = field(default=CircuitState.CLOSED)
    failure_count: int = field(default=0)
    success_count: int = field(default=0)
    opened_at: Optional[float] = field(default=None)

    async def __aenter__(self):
        if self.state == CircuitState.OPEN:
            if self._should_attempt_recovery():
                self.state = CircuitState.HALF_OPEN
                self.success_count = 0
                logger.info("circuit_half_open", circuit=self.name)
            else:
                raise CircuitOpenError(self.name, self._time_until_recovery())
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None:
            self._record_failure()
        else:
            self._record_success()
        return False

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def _should_attempt_recovery(self) -> bool:
        if self.opened_at is None:
            return True
        return time.monotonic() - self.opened_at >= self.recovery_timeout

    def _time_until_recovery(self) -> float:
        if self.opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self.opened_at))

    def _record_failure(self):
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN:
            self._open()
            logger.warning("circuit_reopened", circuit=self.name)
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self._open()
            logger.warning("circuit_opened", circuit=self.name, failures=self.failure_count)

    def _record_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.half_open_requests:
                self.state = CircuitState.CLOSED
                self.failure_count = 0
                self.opened_at = None
                logger.info("circuit_closed", circuit=self.name)
        else:
            self.failure_count = 0

    def _open(self):
        self.state = CircuitState.OPEN
        self.opened_at = time.monotonic()

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.opened_at = None


class CircuitOpenError(Exception):
    """Raised when the circuit is open and the call should fail fast."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit {name} is open. Retry after {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    if name not in _breakers:
        _breakers[name] = CircuitBreaker(name=name, **kwargs)
    return _breakers[name]


def clear_all_breakers():
    """Forget every registered breaker. Used by tests."""
    _breakers.clear()
