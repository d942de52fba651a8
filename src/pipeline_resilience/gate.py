"""Concurrency-capped, breaker-aware execution of stage operations.

Requests beyond ``max_concurrent`` wait in a priority queue (higher
priority first, FIFO among equals). Each admitted request runs under a
timeout; its outcome feeds the stage breaker and the telemetry window
the health monitor reads.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

import structlog

from pipeline_resilience.exceptions import CircuitOpenError, EngineShutdownError

if TYPE_CHECKING:
    from pipeline_resilience.config import GateSettings
    from pipeline_resilience.models import Stage
    from pipeline_resilience.monitoring.probes import TelemetryRecorder
    from pipeline_resilience.recovery.breaker import BreakerBank

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")

_DEFAULT_MAX_CONCURRENT = 10
_DEFAULT_TIMEOUT_SECONDS = 30.0
_DRAIN_POLL_SECONDS = 0.05


class ExecutionGate:
    """Admission control in front of stage operations.

    Attributes:
        max_concurrent: Requests allowed to run at once.
        request_timeout_seconds: Deadline for a single admitted request.
    """

    def __init__(
        self,
        breakers: BreakerBank,
        telemetry: TelemetryRecorder,
        max_concurrent: int = _DEFAULT_MAX_CONCURRENT,
        request_timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.breakers = breakers
        self.telemetry = telemetry
        self.max_concurrent = max_concurrent
        self.request_timeout_seconds = request_timeout_seconds
        self._active = 0
        self._waiters: list[tuple[int, int, asyncio.Future[None]]] = []
        self._sequence = itertools.count()
        self._closed = False

    @classmethod
    def from_settings(
        cls,
        settings: GateSettings,
        breakers: BreakerBank,
        telemetry: TelemetryRecorder,
    ) -> ExecutionGate:
        return cls(
            breakers=breakers,
            telemetry=telemetry,
            max_concurrent=settings.max_concurrent_requests,
            request_timeout_seconds=settings.request_timeout_seconds,
        )

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def queued_count(self) -> int:
        return sum(1 for _, _, future in self._waiters if not future.done())

    async def run(
        self,
        request_id: str,
        operation: Callable[[], Awaitable[T]],
        stage: Stage | None = None,
        priority: int = 5,
    ) -> T:
        """Run ``operation`` once a slot is free.

        Raises:
            EngineShutdownError: If the gate is closed.
            CircuitOpenError: If ``stage``'s breaker is open.
            TimeoutError: If the operation exceeds the request timeout.
        """
        if self._closed:
            raise EngineShutdownError(f"Request {request_id} rejected: shutting down")
        self._check_breaker(stage)

        await self._acquire(priority, request_id)
        start = time.perf_counter()
        try:
            self._check_breaker(stage)
            logger.debug(
                "gate_request_started",
                request_id=request_id,
                active=self._active,
                capacity=self.max_concurrent,
            )
            result = await asyncio.wait_for(
                operation(), timeout=self.request_timeout_seconds
            )
        except CircuitOpenError:
            raise
        except Exception as exc:
            self._record(stage, time.perf_counter() - start, success=False)
            logger.warning(
                "gate_request_failed",
                request_id=request_id,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            raise
        else:
            self._record(stage, time.perf_counter() - start, success=True)
            return result
        finally:
            self._release()

    def _check_breaker(self, stage: Stage | None) -> None:
        if stage is None:
            return
        breaker = self.breakers.peek(stage)
        if breaker is not None and breaker.is_open():
            raise CircuitOpenError(str(stage))

    def _record(self, stage: Stage | None, duration: float, success: bool) -> None:
        self.telemetry.record_operation(stage, duration, success)
        if stage is None:
            return
        if success:
            breaker = self.breakers.peek(stage)
            if breaker is not None:
                breaker.record_success()
        else:
            self.breakers.get(stage).record_failure()

    async def _acquire(self, priority: int, request_id: str) -> None:
        if self._active < self.max_concurrent and not self.queued_count:
            self._active += 1
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        heapq.heappush(self._waiters, (-priority, next(self._sequence), future))
        logger.debug("gate_request_queued", request_id=request_id, priority=priority)
        try:
            await future
        except asyncio.CancelledError:
            # The slot may have been handed over just before cancellation.
            if future.done() and not future.cancelled():
                self._release()
            raise

    def _release(self) -> None:
        while self._waiters:
            _, _, future = heapq.heappop(self._waiters)
            if not future.done():
                # Slot passes straight to the waiter; active count is unchanged.
                future.set_result(None)
                return
        self._active -= 1

    async def close(self, grace_seconds: float) -> int:
        """Stop admitting work and wait for in-flight requests.

        Queued requests fail with :class:`EngineShutdownError`.

        Returns:
            Number of requests still running when the grace period ended.
        """
        self._closed = True
        while self._waiters:
            _, _, future = heapq.heappop(self._waiters)
            if not future.done():
                future.set_exception(EngineShutdownError("Gate closed while queued"))

        deadline = time.monotonic() + grace_seconds
        while self._active > 0 and time.monotonic() < deadline:
            logger.info("gate_waiting_for_requests", active=self._active)
            await asyncio.sleep(_DRAIN_POLL_SECONDS)

        if self._active:
            logger.warning("gate_closed_with_active_requests", active=self._active)
        return self._active
