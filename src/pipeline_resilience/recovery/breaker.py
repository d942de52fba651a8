"""Per-stage three-state circuit breaker."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

import structlog

from pipeline_resilience.models import BreakerState, Stage

if TYPE_CHECKING:
    from pipeline_resilience.config import BreakerSettings
    from pipeline_resilience.models import Clock

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_THRESHOLD = 5
_DEFAULT_TIMEOUT_SECONDS = 60.0


class CircuitBreaker:
    """Guard that stops invoking a repeatedly failing stage until a cooldown.

    The open -> half-open transition is evaluated lazily in :meth:`is_open`,
    so no timer is needed. All transitions happen under a lock because the
    orchestrator and the health monitor may touch the same breaker.

    Attributes:
        stage: Stage this breaker guards.
        threshold: Consecutive failures that trip the breaker.
        timeout_seconds: Time after the last failure before a probe is allowed.
    """

    def __init__(
        self,
        stage: Stage,
        threshold: int = _DEFAULT_THRESHOLD,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.stage = stage
        self.threshold = threshold
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._last_failure_time = 0.0

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def last_failure_time(self) -> float:
        return self._last_failure_time

    def is_open(self) -> bool:
        """Whether calls to the stage should be rejected right now.

        An open breaker whose timeout has elapsed moves to half-open and
        reports not-open so exactly this caller can probe the stage.
        """
        with self._lock:
            if self._state is not BreakerState.OPEN:
                return False
            if self._clock() - self._last_failure_time > self.timeout_seconds:
                self._state = BreakerState.HALF_OPEN
                logger.info("circuit_breaker_half_open", stage=self.stage)
                return False
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state is not BreakerState.CLOSED:
                logger.info("circuit_breaker_closed", stage=self.stage)
            self._failures = 0
            self._state = BreakerState.CLOSED

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure_time = self._clock()
            if self._state is BreakerState.HALF_OPEN:
                self._state = BreakerState.OPEN
                logger.warning(
                    "circuit_breaker_reopened",
                    stage=self.stage,
                    failures=self._failures,
                )
            elif (
                self._state is BreakerState.CLOSED
                and self._failures >= self.threshold
            ):
                self._state = BreakerState.OPEN
                logger.warning(
                    "circuit_breaker_opened",
                    stage=self.stage,
                    failures=self._failures,
                    threshold=self.threshold,
                )

    def reset(self) -> None:
        """Force the breaker closed, e.g. on engine shutdown."""
        with self._lock:
            self._failures = 0
            self._last_failure_time = 0.0
            self._state = BreakerState.CLOSED


class BreakerBank:
    """Lazily created circuit breakers, one per stage."""

    def __init__(
        self,
        threshold: int = _DEFAULT_THRESHOLD,
        timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.threshold = threshold
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._breakers: dict[Stage, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls, settings: BreakerSettings, clock: Clock = time.time
    ) -> BreakerBank:
        return cls(
            threshold=settings.threshold,
            timeout_seconds=settings.timeout_seconds,
            clock=clock,
        )

    def get(self, stage: Stage) -> CircuitBreaker:
        """Return the breaker for a stage, creating it on first use."""
        with self._lock:
            breaker = self._breakers.get(stage)
            if breaker is None:
                breaker = CircuitBreaker(
                    stage,
                    threshold=self.threshold,
                    timeout_seconds=self.timeout_seconds,
                    clock=self._clock,
                )
                self._breakers[stage] = breaker
            return breaker

    def peek(self, stage: Stage) -> CircuitBreaker | None:
        """Return the breaker for a stage without creating one."""
        with self._lock:
            return self._breakers.get(stage)

    def all(self) -> dict[Stage, CircuitBreaker]:
        with self._lock:
            return dict(self._breakers)

    def open_count(self) -> int:
        return sum(1 for b in self.all().values() if b.state is BreakerState.OPEN)

    def reset_all(self) -> None:
        for breaker in self.all().values():
            breaker.reset()
