"""Recovery orchestration exports."""

from pipeline_resilience.recovery.breaker import BreakerBank, CircuitBreaker
from pipeline_resilience.recovery.history import ErrorHistory
from pipeline_resilience.recovery.orchestrator import RecoveryOrchestrator
from pipeline_resilience.recovery.strategies import (
    DEFAULT_STRATEGY_SPECS,
    ContentCache,
    RecoveryToolkit,
    StageInvoker,
    StrategyRegistry,
    StrategySpec,
    build_default_registry,
)

__all__ = [
    "DEFAULT_STRATEGY_SPECS",
    "BreakerBank",
    "CircuitBreaker",
    "ContentCache",
    "ErrorHistory",
    "RecoveryOrchestrator",
    "RecoveryToolkit",
    "StageInvoker",
    "StrategyRegistry",
    "StrategySpec",
    "build_default_registry",
]
