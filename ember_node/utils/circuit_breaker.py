"""Circuit breaker for registry RPC endpoints and peer delivery targets.

Tracks consecutive failures per target and stops calling a target that keeps
failing until a cool-down has elapsed.

States:
- CLOSED: calls flow through
- OPEN: calls rejected immediately
- HALF_OPEN: a limited number of probe calls allowed after the cool-down
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import Enum

import structlog

from ember_node.api.metrics import CIRCUIT_BREAKER_STATE

log = structlog.get_logger()


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure-count breaker with a recovery cool-down."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._half_open_max = half_open_max
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probes = 0

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self.retry_after == 0.0:
            self._state = CircuitState.HALF_OPEN
            self._probes = 0
            log.info("circuit_half_open", target=self.name)
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def retry_after(self) -> float:
        """Seconds until an open breaker lets a probe through (0 if not open)."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.recovery_timeout - (self._clock() - self._opened_at))

    def allow_request(self) -> bool:
        state = self.state
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.HALF_OPEN and self._probes < self._half_open_max:
            self._probes += 1
            return True
        return False

    def record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            log.info("circuit_closed", target=self.name)
        self._failures = 0
        self._state = CircuitState.CLOSED
        CIRCUIT_BREAKER_STATE.labels(target=self.name).set(0)

    def record_failure(self) -> None:
        self._failures += 1
        if self._state == CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != CircuitState.OPEN:
                log.warning("circuit_opened", target=self.name, failures=self._failures)
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            CIRCUIT_BREAKER_STATE.labels(target=self.name).set(1)
