"""Unit tests for pipeline_resilience.monitoring.probes."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from pipeline_resilience.models import Stage
from pipeline_resilience.monitoring.probes import (
    CACHE_EFFECTIVENESS,
    ERROR_RATE,
    MEMORY_PRESSURE,
    PROCESSING_LATENCY,
    ResourceProbe,
    TelemetryRecorder,
    system_memory_pressure,
)

if TYPE_CHECKING:
    from tests.conftest import FakeClock


class TestTelemetryRecorder:
    """Sliding-window statistics."""

    def test_empty_window_reports_none(self, clock: FakeClock) -> None:
        telemetry = TelemetryRecorder(clock=clock)
        assert telemetry.average_latency_seconds() is None
        assert telemetry.error_rate() is None
        assert telemetry.cache_hit_rate() is None

    def test_latency_and_error_rate(self, clock: FakeClock) -> None:
        telemetry = TelemetryRecorder(clock=clock)
        telemetry.record_operation(Stage.ANALYSIS, 1.0, success=True)
        telemetry.record_operation(Stage.ANALYSIS, 3.0, success=False)
        assert telemetry.average_latency_seconds() == 2.0
        assert telemetry.error_rate() == 0.5

    def test_old_outcomes_expire(self, clock: FakeClock) -> None:
        telemetry = TelemetryRecorder(window_seconds=60, clock=clock)
        telemetry.record_operation(None, 1.0, success=False)
        telemetry.record_cache_lookup(hit=False)
        clock.advance(61)
        telemetry.record_operation(None, 0.5, success=True)
        assert telemetry.error_rate() == 0.0
        assert telemetry.cache_hit_rate() is None

    def test_cache_hit_rate(self, clock: FakeClock) -> None:
        telemetry = TelemetryRecorder(clock=clock)
        for hit in (True, True, False, True):
            telemetry.record_cache_lookup(hit=hit)
        assert telemetry.cache_hit_rate() == 0.75

    def test_reset(self, clock: FakeClock) -> None:
        telemetry = TelemetryRecorder(clock=clock)
        telemetry.record_operation(None, 1.0, success=True)
        telemetry.reset()
        assert telemetry.average_latency_seconds() is None


class TestResourceProbe:
    """Indicator sampling."""

    def test_system_memory_is_a_fraction(self) -> None:
        assert 0.0 <= system_memory_pressure() <= 1.0

    def test_samples_every_indicator(self, clock: FakeClock) -> None:
        telemetry = TelemetryRecorder(clock=clock)
        telemetry.record_operation(Stage.RENDERING, 0.25, success=True)
        values = ResourceProbe(telemetry, {MEMORY_PRESSURE: lambda: 0.4}).sample()
        assert values == {
            MEMORY_PRESSURE: 0.4,
            PROCESSING_LATENCY: pytest.approx(250.0),
            ERROR_RATE: 0.0,
            CACHE_EFFECTIVENESS: None,
        }

    def test_failing_probe_reports_none(self, clock: FakeClock) -> None:
        def _broken() -> float:
            raise OSError("sensor unavailable")

        probe = ResourceProbe(TelemetryRecorder(clock=clock), {MEMORY_PRESSURE: _broken})
        assert probe.sample()[MEMORY_PRESSURE] is None
