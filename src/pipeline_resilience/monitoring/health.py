"""Periodic health scoring, predictive indicators and preventive triggers."""

from __future__ import annotations

import asyncio
import statistics
import threading
import time
from collections import deque
from typing import TYPE_CHECKING

import structlog

from pipeline_resilience.config import MonitorSettings
from pipeline_resilience.models import (
    PredictiveIndicator,
    RiskLevel,
    Stage,
    SystemHealth,
    Trend,
)
from pipeline_resilience.monitoring.probes import (
    CACHE_EFFECTIVENESS,
    ERROR_RATE,
    MEMORY_PRESSURE,
    PROCESSING_LATENCY,
)

if TYPE_CHECKING:
    from pipeline_resilience.config import IndicatorSettings
    from pipeline_resilience.models import Clock
    from pipeline_resilience.monitoring.preventive import PreventiveActionRunner
    from pipeline_resilience.monitoring.probes import ResourceProbe
    from pipeline_resilience.recovery.history import ErrorHistory

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_STABLE_SLOPE = 0.01
_MEDIUM_RATIO = 0.8
_CRITICAL_RATIO = 1.5


def default_indicators(settings: IndicatorSettings) -> list[PredictiveIndicator]:
    return [
        PredictiveIndicator(name=MEMORY_PRESSURE, threshold=settings.memory_pressure),
        PredictiveIndicator(
            name=PROCESSING_LATENCY, threshold=settings.processing_latency_ms
        ),
        PredictiveIndicator(name=ERROR_RATE, threshold=settings.error_rate),
        PredictiveIndicator(
            name=CACHE_EFFECTIVENESS,
            threshold=settings.cache_effectiveness,
            current_value=1.0,
            higher_is_worse=False,
        ),
    ]


def grade_indicator(indicator: PredictiveIndicator) -> RiskLevel:
    """Risk level from how far the value sits relative to its threshold.

    Crossing the threshold is ``high``; crossing it by half again is
    ``critical``; within 80% of it is ``medium``.
    """
    value, threshold = indicator.current_value, indicator.threshold
    if indicator.higher_is_worse:
        ratio = value / threshold
    else:
        ratio = threshold / value if value > 0 else float("inf")

    if ratio > _CRITICAL_RATIO:
        return RiskLevel.CRITICAL
    if indicator.crossed():
        return RiskLevel.HIGH
    if ratio > _MEDIUM_RATIO:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def compute_trend(
    samples: list[float], threshold: float, higher_is_worse: bool = True
) -> Trend:
    """Least-squares slope of recent samples, normalised by the threshold."""
    if len(samples) < 3:
        return Trend.STABLE
    slope = statistics.linear_regression(range(len(samples)), samples).slope
    relative = slope / threshold if threshold else slope
    if abs(relative) < _STABLE_SLOPE:
        return Trend.STABLE
    rising = relative > 0
    return Trend.DEGRADING if rising == higher_is_worse else Trend.IMPROVING


class HealthMonitor:
    """Owner of :class:`SystemHealth`, recomputed on a fixed interval.

    Each cycle scores every stage from recent error density, refreshes the
    indicators from the resource probe, and runs all preventive actions when
    any indicator is high or critical. Callers only ever see deep copies.
    """

    def __init__(
        self,
        history: ErrorHistory,
        probe: ResourceProbe,
        preventive: PreventiveActionRunner,
        settings: MonitorSettings | None = None,
        clock: Clock = time.time,
    ) -> None:
        self.history = history
        self.probe = probe
        self.preventive = preventive
        self.settings = settings or MonitorSettings()
        self._clock = clock
        self._lock = threading.Lock()
        self._health = SystemHealth(
            indicators=default_indicators(self.settings.indicators),
            last_updated=clock(),
        )
        self._samples: dict[str, deque[float]] = {
            indicator.name: deque(maxlen=self.settings.trend_samples)
            for indicator in self._health.indicators
        }
        self._task: asyncio.Task[None] | None = None
        self.snapshots: asyncio.Queue[SystemHealth] | None = (
            asyncio.Queue(maxsize=self.settings.snapshot_queue_size)
            if self.settings.snapshot_queue_size
            else None
        )

    # -- read side ---------------------------------------------------------

    def get_health_report(self) -> SystemHealth:
        with self._lock:
            return self._health.model_copy(deep=True)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # -- recomputation -----------------------------------------------------

    def update_stage_health(self) -> None:
        now = self._clock()
        cutoff = now - self.settings.health_window_seconds
        scores = {
            stage: max(
                0.0,
                1.0
                - self.history.count_since(stage, cutoff)
                / self.settings.errors_for_zero_health,
            )
            for stage in Stage
        }
        with self._lock:
            self._health.stages = scores
            self._health.overall = sum(scores.values()) / len(scores)
            self._health.last_updated = now

    def update_indicators(self, values: dict[str, float | None]) -> list[str]:
        """Apply probe values; returns names of indicators at high or above."""
        elevated: list[str] = []
        with self._lock:
            for indicator in self._health.indicators:
                value = values.get(indicator.name)
                if value is not None:
                    indicator.current_value = value
                    self._samples[indicator.name].append(value)
                indicator.trend = compute_trend(
                    list(self._samples[indicator.name]),
                    indicator.threshold,
                    indicator.higher_is_worse,
                )
                indicator.risk_level = grade_indicator(indicator)

                if indicator.crossed():
                    recommendation = f"Address {indicator.name}"
                    if recommendation not in self._health.recommendations:
                        self._health.recommendations.append(recommendation)
                if indicator.risk_level.rank >= RiskLevel.HIGH.rank:
                    elevated.append(indicator.name)
        return elevated

    async def run_cycle(self) -> SystemHealth:
        """One monitoring pass; returns the resulting snapshot."""
        self.update_stage_health()
        elevated = self.update_indicators(self.probe.sample())

        if elevated:
            logger.warning("risk_indicators_elevated", indicators=elevated)
            await self.preventive.run_all()

        snapshot = self.get_health_report()
        self._publish(snapshot)
        logger.debug(
            "health_cycle_completed",
            overall=round(snapshot.overall, 3),
            elevated=len(elevated),
        )
        return snapshot

    def _publish(self, snapshot: SystemHealth) -> None:
        if self.snapshots is None:
            return
        if self.snapshots.full():
            self.snapshots.get_nowait()
        self.snapshots.put_nowait(snapshot)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Schedule the periodic loop on the running event loop."""
        if self.running:
            logger.debug("health_monitor_already_running")
            return
        self._task = asyncio.create_task(self._loop(), name="health-monitor")
        logger.info(
            "health_monitor_started", interval=self.settings.interval_seconds
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("health_monitor_stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.interval_seconds)
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("health_cycle_failed")
