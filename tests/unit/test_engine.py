"""Unit tests for pipeline_resilience.engine - end-to-end wiring."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import pytest

from pipeline_resilience.config import (
    RecoverySettings,
    Settings,
    StrategyOverrideSettings,
)
from pipeline_resilience.engine import ResilienceEngine
from pipeline_resilience.exceptions import (
    EngineShutdownError,
    UnknownPreventiveActionError,
)
from pipeline_resilience.models import ErrorContext, RiskLevel, Stage
from pipeline_resilience.monitoring.probes import MEMORY_PRESSURE
from pipeline_resilience.recovery.strategies import StrategyRegistry

if TYPE_CHECKING:
    from tests.conftest import FakeClock

MakeContext = Callable[..., ErrorContext]
Probes = dict[str, Callable[[], "float | None"]]


@pytest.fixture()
def engine(clock: FakeClock, quiet_probes: Probes) -> ResilienceEngine:
    return ResilienceEngine(clock=clock, probe_overrides=quiet_probes)


# ---------------------------------------------------------------------------
# TestWiring
# ---------------------------------------------------------------------------


class TestWiring:
    """Construction from settings and host collaborators."""

    def test_default_catalogue_registered(self, engine: ResilienceEngine) -> None:
        assert len(engine.registry) == 5
        assert engine.orchestrator.registry is engine.registry

    def test_settings_disable_strategy(
        self, clock: FakeClock, quiet_probes: Probes
    ) -> None:
        settings = Settings(
            recovery=RecoverySettings(
                strategies={"cache_recovery": StrategyOverrideSettings(enabled=False)}
            )
        )
        engine = ResilienceEngine(settings, clock=clock, probe_overrides=quiet_probes)
        assert "cache_recovery" not in [s.id for s in engine.registry]

    def test_host_action_replaces_builtin(
        self, clock: FakeClock, quiet_probes: Probes
    ) -> None:
        engine = ResilienceEngine(
            clock=clock,
            probe_overrides=quiet_probes,
            preventive_actions={"memory_cleanup": lambda: None, "warm_cache": lambda: None},
        )
        assert sorted(engine.preventive.names()) == ["memory_cleanup", "warm_cache"]

    @pytest.mark.asyncio
    async def test_empty_host_registry_is_kept(
        self, clock: FakeClock, quiet_probes: Probes, make_context: MakeContext
    ) -> None:
        custom = StrategyRegistry()
        engine = ResilienceEngine(
            clock=clock, probe_overrides=quiet_probes, registry=custom
        )
        assert engine.registry is custom
        assert len(engine.registry) == 0

        result = await engine.recover(make_context())
        assert result.success is False
        assert result.strategy == "none"
        assert result.next_action == "abort"


# ---------------------------------------------------------------------------
# TestRecovery
# ---------------------------------------------------------------------------


class TestRecovery:
    """Recovery through the engine facade."""

    @pytest.mark.asyncio
    async def test_recover_with_stage_callback(
        self, make_context: MakeContext, clock: FakeClock, quiet_probes: Probes
    ) -> None:
        async def _analysis(context: ErrorContext, params: dict[str, Any]) -> Any:
            return {"concepts": ["retry"], "params": params}

        engine = ResilienceEngine(
            clock=clock,
            probe_overrides=quiet_probes,
            stage_callbacks={Stage.ANALYSIS: _analysis},
        )
        result = await engine.recover(make_context())

        assert result.success is True
        assert result.strategy == "intelligent_retry"
        metrics = engine.get_resilience_metrics()
        assert metrics.details["recoveries"] == {"analysis:intelligent_retry": 1}

    @pytest.mark.asyncio
    async def test_failures_feed_risk_prediction(
        self, engine: ResilienceEngine, make_context: MakeContext
    ) -> None:
        for _ in range(4):
            engine.history.record(make_context())
        assessment = engine.predict_failure_risk(Stage.ANALYSIS, {"text": "hi"})
        assert assessment.risk_level is RiskLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_run_stage_through_gate(self, engine: ResilienceEngine) -> None:
        async def _op() -> str:
            return "rendered"

        assert await engine.run_stage("req-1", _op, stage=Stage.RENDERING) == "rendered"


# ---------------------------------------------------------------------------
# TestHealth
# ---------------------------------------------------------------------------


class TestHealth:
    """Health cycles and preventive actions."""

    @pytest.mark.asyncio
    async def test_check_health(self, engine: ResilienceEngine) -> None:
        report = await engine.check_health()
        assert report.overall == 1.0
        assert engine.get_health_report().indicator(MEMORY_PRESSURE).current_value == 0.1

    @pytest.mark.asyncio
    async def test_run_preventive_action(
        self, engine: ResilienceEngine, make_context: MakeContext, clock: FakeClock
    ) -> None:
        engine.history.record(make_context(timestamp=clock() - 7200))
        await engine.run_preventive_action("memory_cleanup")
        assert engine.history.total() == 0

    @pytest.mark.asyncio
    async def test_unknown_preventive_action(self, engine: ResilienceEngine) -> None:
        with pytest.raises(UnknownPreventiveActionError):
            await engine.run_preventive_action("reboot")


# ---------------------------------------------------------------------------
# TestMetrics
# ---------------------------------------------------------------------------


class TestMetrics:
    """Resilience metrics."""

    def test_idle_engine_is_fully_resilient(self, engine: ResilienceEngine) -> None:
        metrics = engine.get_resilience_metrics()
        assert metrics.load_handling == 1.0
        assert metrics.circuit_breaker_effectiveness == 1.0
        assert metrics.error_recovery_speed == 1.0
        assert metrics.overall_resilience == pytest.approx(1.0)

    def test_open_breakers_lower_effectiveness(self, engine: ResilienceEngine) -> None:
        for stage in (Stage.ANALYSIS, Stage.RENDERING, Stage.EXPORT, Stage.ANIMATION):
            breaker = engine.breakers.get(stage)
            for _ in range(5):
                breaker.record_failure()
        metrics = engine.get_resilience_metrics()
        assert metrics.circuit_breaker_effectiveness == 0.5
        assert metrics.details["open_circuits"] == 4
        assert metrics.overall_resilience == pytest.approx(0.8)


# ---------------------------------------------------------------------------
# TestLifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Start, graceful shutdown and the async context manager."""

    @pytest.mark.asyncio
    async def test_context_manager_starts_and_stops(
        self, clock: FakeClock, quiet_probes: Probes
    ) -> None:
        async with ResilienceEngine(clock=clock, probe_overrides=quiet_probes) as engine:
            assert engine.monitor.running is True
            for _ in range(5):
                engine.breakers.get(Stage.ANALYSIS).record_failure()
        assert engine.monitor.running is False
        assert engine.breakers.open_count() == 0

    @pytest.mark.asyncio
    async def test_rejects_work_after_shutdown(self, engine: ResilienceEngine) -> None:
        await engine.shutdown()

        async def _op() -> None:
            return None

        with pytest.raises(EngineShutdownError):
            await engine.run_stage("late", _op)
