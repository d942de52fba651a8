"""Data types shared by the recovery and monitoring subsystems."""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

Clock = Callable[[], float]
"""Returns the current time in epoch seconds. Injected for testability."""

MAX_RETRY_COUNT = 3


class Stage(StrEnum):
    """Steps of the audio-to-diagram content pipeline."""

    TRANSCRIPTION = "transcription"
    SEGMENTATION = "segmentation"
    ANALYSIS = "analysis"
    DIAGRAM_DETECTION = "diagram_detection"
    LAYOUT_GENERATION = "layout_generation"
    ANIMATION = "animation"
    RENDERING = "rendering"
    EXPORT = "export"


class BreakerState(StrEnum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class NextAction(StrEnum):
    """What the calling pipeline should do after a recovery attempt."""

    RETRY = "retry"
    FALLBACK = "fallback"
    ESCALATE = "escalate"
    ABORT = "abort"


class RiskLevel(StrEnum):
    """Bucketed failure-likelihood estimate, ordered low to critical."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class Trend(StrEnum):
    """Direction an indicator is moving in, relative to its risk."""

    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class ErrorKind(StrEnum):
    """Failure taxonomy, each class addressed by one recovery strategy."""

    TRANSIENT = "transient"
    QUALITY_DEGRADABLE = "quality_degradable"
    PATTERN_MATCHABLE = "pattern_matchable"
    ALGORITHM_SPECIFIC = "algorithm_specific"
    CATASTROPHIC = "catastrophic"


STRATEGY_FOR_ERROR_KIND: dict[ErrorKind, str] = {
    ErrorKind.TRANSIENT: "intelligent_retry",
    ErrorKind.QUALITY_DEGRADABLE: "degraded_quality_fallback",
    ErrorKind.PATTERN_MATCHABLE: "cache_recovery",
    ErrorKind.ALGORITHM_SPECIFIC: "alternative_algorithm",
    ErrorKind.CATASTROPHIC: "minimal_viable_output",
}

# First match wins, so subclasses precede their bases.
_ERROR_KIND_BY_EXCEPTION: tuple[tuple[tuple[type[BaseException], ...], ErrorKind], ...] = (
    ((RecursionError, SystemError), ErrorKind.CATASTROPHIC),
    ((MemoryError, OverflowError), ErrorKind.QUALITY_DEGRADABLE),
    ((TimeoutError, ConnectionError, InterruptedError), ErrorKind.TRANSIENT),
    ((NotImplementedError, ArithmeticError, TypeError), ErrorKind.ALGORITHM_SPECIFIC),
    ((LookupError, ValueError), ErrorKind.PATTERN_MATCHABLE),
)


def classify_exception(exc: BaseException) -> ErrorKind:
    """Place an exception in the failure taxonomy; unknown types are transient."""
    for types, kind in _ERROR_KIND_BY_EXCEPTION:
        if isinstance(exc, types):
            return kind
    return ErrorKind.TRANSIENT


# ---------------------------------------------------------------------------
# Failure input
# ---------------------------------------------------------------------------


class SessionMetadata(BaseModel):
    """Pipeline session the failure happened in."""

    model_config = ConfigDict(frozen=True)

    session_id: str = ""
    preferences: dict[str, Any] = Field(default_factory=dict)


class ErrorContext(BaseModel):
    """Immutable description of one stage failure."""

    model_config = ConfigDict(frozen=True)

    stage: Stage
    component: str
    input: Any = None
    error: str
    error_kind: str = "Error"
    category: ErrorKind | None = None
    timestamp: float = Field(default_factory=time.time)
    retry_count: int = Field(default=0, ge=0, le=MAX_RETRY_COUNT)
    session: SessionMetadata = Field(default_factory=SessionMetadata)

    @classmethod
    def from_exception(
        cls,
        stage: Stage,
        component: str,
        exc: BaseException,
        *,
        input: Any = None,  # noqa: A002
        session: SessionMetadata | None = None,
        retry_count: int = 0,
        timestamp: float | None = None,
    ) -> ErrorContext:
        """Build a context from a raised exception.

        The pattern key uses the exception class name; ``category`` places
        the exception in the failure taxonomy.
        """
        fields: dict[str, Any] = {
            "stage": stage,
            "component": component,
            "input": input,
            "error": str(exc) or exc.__class__.__name__,
            "error_kind": exc.__class__.__name__,
            "category": classify_exception(exc),
            "retry_count": retry_count,
            "session": session or SessionMetadata(),
        }
        if timestamp is not None:
            fields["timestamp"] = timestamp
        return cls(**fields)

    def next_retry(self) -> ErrorContext:
        """Copy for an orchestrator-level retry of the same logical failure."""
        return self.model_copy(
            update={"retry_count": min(self.retry_count + 1, MAX_RETRY_COUNT)}
        )

    @property
    def pattern_key(self) -> str:
        return f"{self.stage}:{self.component}:{self.error_kind}"

    @property
    def suggested_strategy(self) -> str | None:
        """Default strategy addressing this failure's category, if classified."""
        if self.category is None:
            return None
        return STRATEGY_FOR_ERROR_KIND[self.category]


# ---------------------------------------------------------------------------
# Recovery output
# ---------------------------------------------------------------------------


class RecoveryResult(BaseModel):
    """Outcome of a recovery attempt (one strategy, or the whole chain)."""

    success: bool
    result: Any = None
    fallback_used: bool = False
    elapsed_seconds: float = Field(default=0.0, ge=0.0)
    strategy: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    improvements: list[str] = Field(default_factory=list)
    next_action: NextAction = NextAction.ABORT


class FailurePattern(BaseModel):
    """Statistics about prior failures matching a new one."""

    key: str
    frequency: int = Field(default=0, ge=0)
    last_occurrence: float | None = None
    common_causes: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Health and risk
# ---------------------------------------------------------------------------


class PredictiveIndicator(BaseModel):
    """A telemetry signal compared against its warning threshold."""

    name: str
    threshold: float
    current_value: float = 0.0
    higher_is_worse: bool = True
    trend: Trend = Trend.STABLE
    risk_level: RiskLevel = RiskLevel.LOW

    def crossed(self) -> bool:
        if self.higher_is_worse:
            return self.current_value > self.threshold
        return self.current_value < self.threshold


class SystemHealth(BaseModel):
    """Snapshot of engine-wide health, owned by the health monitor."""

    overall: float = Field(default=1.0, ge=0.0, le=1.0)
    stages: dict[Stage, float] = Field(
        default_factory=lambda: dict.fromkeys(Stage, 1.0)
    )
    indicators: list[PredictiveIndicator] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    last_updated: float = Field(default_factory=time.time)

    def indicator(self, name: str) -> PredictiveIndicator | None:
        return next((i for i in self.indicators if i.name == name), None)


class RiskAssessment(BaseModel):
    """Predicted failure risk for a stage that has not run yet."""

    stage: Stage
    risk_level: RiskLevel
    score: float = Field(ge=0.0)
    confidence: float = Field(ge=0.0, le=1.0)
    indicators: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ResilienceMetrics(BaseModel):
    """Load, breaker and recovery-speed scores with supporting details."""

    load_handling: float = Field(ge=0.0, le=1.0)
    circuit_breaker_effectiveness: float = Field(ge=0.0, le=1.0)
    error_recovery_speed: float = Field(ge=0.0, le=1.0)
    overall_resilience: float = Field(ge=0.0, le=1.0)
    details: dict[str, Any] = Field(default_factory=dict)
