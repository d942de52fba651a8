"""Application-level wiring of the resilience engine.

The host constructs one :class:`ResilienceEngine` with its collaborators
(stage callbacks, content cache, preventive actions, clock) and passes it
through its own wiring; nothing here is a module-level singleton.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeVar

import structlog

from pipeline_resilience.config import Settings
from pipeline_resilience.gate import ExecutionGate
from pipeline_resilience.models import (
    ErrorContext,
    RecoveryResult,
    ResilienceMetrics,
    RiskAssessment,
    Stage,
    SystemHealth,
)
from pipeline_resilience.monitoring.health import HealthMonitor
from pipeline_resilience.monitoring.preventive import (
    PreventiveAction,
    PreventiveActionRunner,
    default_preventive_actions,
)
from pipeline_resilience.monitoring.probes import (
    ProbeFn,
    ResourceProbe,
    TelemetryRecorder,
)
from pipeline_resilience.monitoring.risk import PredictiveRiskAssessor
from pipeline_resilience.recovery.breaker import BreakerBank
from pipeline_resilience.recovery.history import ErrorHistory
from pipeline_resilience.recovery.orchestrator import RecoveryOrchestrator
from pipeline_resilience.recovery.strategies import (
    ContentCache,
    RecoveryToolkit,
    StageInvoker,
    StrategyRegistry,
    build_default_registry,
)

if TYPE_CHECKING:
    from types import TracebackType

    from pipeline_resilience.models import Clock

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

T = TypeVar("T")


class ResilienceEngine:
    """Recovery, risk prediction and health monitoring for one process.

    Args:
        settings: Resolved settings; defaults are used when omitted.
        clock: Epoch-seconds clock shared by breakers, history windows and
            the monitor.
        stage_callbacks: Per-stage re-invocation used by adaptive retry and
            degraded-quality fallback.
        alternative_callbacks: Per-stage alternate implementations.
        cache: Content cache for cache-based recovery.
        preventive_actions: Host actions, merged over the built-in ones.
        probe_overrides: Replacement resource probes keyed by indicator name.
        registry: A fully custom strategy registry; the default catalogue
            bound to this engine's toolkit is used when omitted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        clock: Clock = time.time,
        stage_callbacks: dict[Stage, StageInvoker] | None = None,
        alternative_callbacks: dict[Stage, StageInvoker] | None = None,
        cache: ContentCache | None = None,
        preventive_actions: dict[str, PreventiveAction] | None = None,
        probe_overrides: dict[str, ProbeFn] | None = None,
        registry: StrategyRegistry | None = None,
    ) -> None:
        self.settings = settings or Settings()
        s = self.settings

        self.history = ErrorHistory.from_settings(s.history)
        self.breakers = BreakerBank.from_settings(s.breaker, clock=clock)
        self.telemetry = TelemetryRecorder(
            window_seconds=s.monitor.telemetry_window_seconds, clock=clock
        )

        self.toolkit = RecoveryToolkit(
            history=self.history,
            stage_callbacks=stage_callbacks,
            alternative_callbacks=alternative_callbacks,
            cache=cache,
            telemetry=self.telemetry,
        )
        self.registry = (
            registry if registry is not None else build_default_registry(self.toolkit)
        )
        self.registry.apply_overrides(s.recovery.strategies)
        self.orchestrator = RecoveryOrchestrator.from_settings(
            s.recovery, self.registry, self.history, self.breakers
        )

        actions = default_preventive_actions(
            self.history, s.risk.error_window_seconds, clock=clock
        )
        actions.update(preventive_actions or {})
        self.preventive = PreventiveActionRunner(actions)
        self.probe = ResourceProbe(self.telemetry, probe_overrides)
        self.monitor = HealthMonitor(
            self.history, self.probe, self.preventive, s.monitor, clock=clock
        )
        self.assessor = PredictiveRiskAssessor(
            self.history, self.monitor.get_health_report, s.risk, clock=clock
        )
        self.gate = ExecutionGate.from_settings(s.gate, self.breakers, self.telemetry)

    # -- recovery ----------------------------------------------------------

    async def recover(self, context: ErrorContext) -> RecoveryResult:
        return await self.orchestrator.recover(context)

    async def run_stage(
        self,
        request_id: str,
        operation: Callable[[], Awaitable[T]],
        stage: Stage | None = None,
        priority: int = 5,
    ) -> T:
        """Run a stage operation through the concurrency/breaker gate."""
        return await self.gate.run(request_id, operation, stage=stage, priority=priority)

    # -- prediction and health ---------------------------------------------

    def predict_failure_risk(self, stage: Stage, payload: Any = None) -> RiskAssessment:
        return self.assessor.assess(stage, payload)

    def get_health_report(self) -> SystemHealth:
        return self.monitor.get_health_report()

    async def check_health(self) -> SystemHealth:
        """Run one monitor cycle now instead of waiting for the interval."""
        return await self.monitor.run_cycle()

    async def run_preventive_action(self, name: str) -> None:
        await self.preventive.run(name)

    def get_resilience_metrics(self) -> ResilienceMetrics:
        capacity = self.gate.max_concurrent
        active = self.gate.active_count
        load_handling = max(0.0, 1.0 - active / capacity)

        total_circuits = len(Stage)
        open_circuits = self.breakers.open_count()
        breaker_effectiveness = max(0.0, 1.0 - open_circuits / total_circuits)

        avg_response = self.telemetry.average_latency_seconds() or 0.0
        baseline = self.settings.gate.response_time_baseline_seconds
        recovery_speed = max(0.0, 1.0 - avg_response / baseline)

        overall = min(
            1.0,
            load_handling * 0.3 + breaker_effectiveness * 0.4 + recovery_speed * 0.3,
        )
        return ResilienceMetrics(
            load_handling=load_handling,
            circuit_breaker_effectiveness=breaker_effectiveness,
            error_recovery_speed=recovery_speed,
            overall_resilience=overall,
            details={
                "active_requests": active,
                "max_capacity": capacity,
                "queued_requests": self.gate.queued_count,
                "open_circuits": open_circuits,
                "total_circuits": total_circuits,
                "avg_response_ms": round(avg_response * 1000),
                "error_rate": self.telemetry.error_rate() or 0.0,
                "recoveries": self.orchestrator.recovery_counts,
            },
        )

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Start periodic health monitoring on the running event loop."""
        self.monitor.start()

    async def shutdown(self) -> None:
        """Stop monitoring, drain in-flight requests and reset breakers."""
        logger.info("engine_shutting_down")
        await self.monitor.stop()
        remaining = await self.gate.close(self.settings.gate.shutdown_grace_seconds)
        self.breakers.reset_all()
        logger.info("engine_shutdown_complete", abandoned_requests=remaining)

    async def __aenter__(self) -> ResilienceEngine:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()
