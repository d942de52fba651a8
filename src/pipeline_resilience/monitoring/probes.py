"""Live resource signals feeding the predictive indicators.

Memory pressure comes from ``psutil``; latency, error rate and cache
effectiveness come from a sliding window of outcomes the engine records
as stages run through the execution gate and cache recovery looks up
prior results.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING

import psutil
import structlog

from pipeline_resilience.models import Stage

if TYPE_CHECKING:
    from pipeline_resilience.models import Clock

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_WINDOW_SECONDS = 300.0

MEMORY_PRESSURE = "memory_pressure"
PROCESSING_LATENCY = "processing_latency"
ERROR_RATE = "error_rate"
CACHE_EFFECTIVENESS = "cache_effectiveness"

ProbeFn = Callable[[], "float | None"]


class _Outcome:
    """Record of a single stage execution."""

    __slots__ = ("duration", "stage", "success", "timestamp")

    def __init__(
        self, timestamp: float, stage: Stage | None, duration: float, success: bool
    ) -> None:
        self.timestamp = timestamp
        self.stage = stage
        self.duration = duration
        self.success = success


class TelemetryRecorder:
    """Sliding window of stage outcomes and cache lookups.

    Attributes:
        window_seconds: Size of the sliding window in seconds.
    """

    def __init__(
        self,
        window_seconds: float = _DEFAULT_WINDOW_SECONDS,
        clock: Clock = time.time,
    ) -> None:
        self.window_seconds = window_seconds
        self._clock = clock
        self._outcomes: deque[_Outcome] = deque()
        self._lookups: deque[tuple[float, bool]] = deque()
        self._lock = threading.Lock()

    def _prune(self) -> None:
        cutoff = self._clock() - self.window_seconds
        while self._outcomes and self._outcomes[0].timestamp < cutoff:
            self._outcomes.popleft()
        while self._lookups and self._lookups[0][0] < cutoff:
            self._lookups.popleft()

    def record_operation(
        self, stage: Stage | None, duration_seconds: float, success: bool
    ) -> None:
        with self._lock:
            self._outcomes.append(
                _Outcome(self._clock(), stage, max(0.0, duration_seconds), success)
            )
            self._prune()

    def record_cache_lookup(self, hit: bool) -> None:
        with self._lock:
            self._lookups.append((self._clock(), hit))
            self._prune()

    def average_latency_seconds(self) -> float | None:
        """Mean duration of operations in the window, ``None`` without data."""
        with self._lock:
            self._prune()
            if not self._outcomes:
                return None
            return sum(o.duration for o in self._outcomes) / len(self._outcomes)

    def error_rate(self) -> float | None:
        with self._lock:
            self._prune()
            if not self._outcomes:
                return None
            errors = sum(1 for o in self._outcomes if not o.success)
            return errors / len(self._outcomes)

    def cache_hit_rate(self) -> float | None:
        with self._lock:
            self._prune()
            if not self._lookups:
                return None
            return sum(1 for _, hit in self._lookups if hit) / len(self._lookups)

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._lookups.clear()


def system_memory_pressure() -> float:
    """Fraction of physical memory in use, 0.0 to 1.0."""
    return psutil.virtual_memory().percent / 100.0


class ResourceProbe:
    """Samples every indicator's current value.

    A probe returning ``None`` means "no data this cycle"; the monitor then
    keeps the indicator's previous value. Hosts can replace any probe by
    name, e.g. to report GPU memory instead of system memory.
    """

    def __init__(
        self,
        telemetry: TelemetryRecorder,
        overrides: dict[str, ProbeFn] | None = None,
    ) -> None:
        self.telemetry = telemetry
        self._probes: dict[str, ProbeFn] = {
            MEMORY_PRESSURE: system_memory_pressure,
            PROCESSING_LATENCY: self._latency_ms,
            ERROR_RATE: telemetry.error_rate,
            CACHE_EFFECTIVENESS: telemetry.cache_hit_rate,
        }
        self._probes.update(overrides or {})

    def _latency_ms(self) -> float | None:
        latency = self.telemetry.average_latency_seconds()
        return None if latency is None else latency * 1000.0

    def sample(self) -> dict[str, float | None]:
        values: dict[str, float | None] = {}
        for name, probe in self._probes.items():
            try:
                values[name] = probe()
            except Exception as exc:
                logger.warning("resource_probe_failed", probe=name, error=str(exc))
                values[name] = None
        return values
