"""Predictive risk assessment for a stage that is about to run.

The assessor only reads: current health, the error history and the input.
It never touches breakers or history, so callers may invoke it
speculatively before every stage.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pipeline_resilience.config import RiskSettings
from pipeline_resilience.models import RiskAssessment, RiskLevel, Stage, SystemHealth
from pipeline_resilience.monitoring.probes import MEMORY_PRESSURE

if TYPE_CHECKING:
    from pipeline_resilience.models import Clock
    from pipeline_resilience.recovery.history import ErrorHistory

_SIZE_NORMALIZER = 10_000
_DEPTH_NORMALIZER = 10


def nesting_depth(payload: Any, _seen: set[int] | None = None) -> int:
    """Deepest level of dict/list nesting; scalars are depth 0.

    A container already on the current path counts as depth 0, so
    self-referencing payloads terminate.
    """
    if not isinstance(payload, (dict, list, tuple, set, frozenset)):
        return 0
    seen = _seen if _seen is not None else set()
    if id(payload) in seen:
        return 0
    seen.add(id(payload))
    try:
        children = payload.values() if isinstance(payload, dict) else payload
        return 1 + max((nesting_depth(v, seen) for v in children), default=0)
    finally:
        seen.discard(id(payload))


def serialized_size(payload: Any) -> int:
    """Length of the JSON form of ``payload``, or of its repr if not JSON-able."""
    try:
        return len(json.dumps(payload, default=str))
    except (TypeError, ValueError, RecursionError):
        return len(repr(payload))


def assess_input_complexity(payload: Any) -> float:
    """Heuristic input complexity in [0, 1] from serialized size and nesting."""
    size = serialized_size(payload)
    depth = nesting_depth(payload)
    return min(
        1.0,
        (size / _SIZE_NORMALIZER) * 0.7 + (depth / _DEPTH_NORMALIZER) * 0.3,
    )


def bucket_risk(
    score: float,
    medium_at: float = 0.2,
    high_at: float = 0.5,
    critical_at: float = 0.8,
) -> RiskLevel:
    if score < medium_at:
        return RiskLevel.LOW
    if score < high_at:
        return RiskLevel.MEDIUM
    if score < critical_at:
        return RiskLevel.HIGH
    return RiskLevel.CRITICAL


class PredictiveRiskAssessor:
    """Combines health, memory pressure, error density and input complexity.

    Each signal that crosses its limit adds its weight to the risk score:
    stage health below ``health_floor`` (0.3), memory pressure above its
    indicator threshold (0.2), more than ``error_count_limit`` errors in
    the last ``error_window_seconds`` (0.4), and input complexity above
    ``complexity_limit`` (0.1).
    """

    def __init__(
        self,
        history: ErrorHistory,
        health: Callable[[], SystemHealth],
        settings: RiskSettings | None = None,
        clock: Clock = time.time,
    ) -> None:
        self.history = history
        self._health = health
        self.settings = settings or RiskSettings()
        self._clock = clock

    def assess(self, stage: Stage, payload: Any = None) -> RiskAssessment:
        s = self.settings
        health = self._health()
        indicators: list[str] = []
        recommendations: list[str] = []
        score = 0.0

        stage_health = health.stages.get(stage, 1.0)
        if stage_health < s.health_floor:
            score += s.health_weight
            indicators.append(
                f"{stage} health is below optimal ({stage_health * 100:.1f}%)"
            )
            recommendations.append(f"Consider running preventive maintenance for {stage}")

        memory = health.indicator(MEMORY_PRESSURE)
        if memory is not None and memory.current_value > memory.threshold:
            score += s.memory_weight
            indicators.append("High memory usage detected")
            recommendations.append("Run memory cleanup before processing")

        recent_errors = self.history.count_since(
            stage, self._clock() - s.error_window_seconds
        )
        if recent_errors > s.error_count_limit:
            score += s.error_weight
            indicators.append(f"{recent_errors} recent errors in {stage}")
            recommendations.append("Review and address recent error patterns")

        complexity = assess_input_complexity(payload)
        if complexity > s.complexity_limit:
            score += s.complexity_weight
            indicators.append("High input complexity detected")
            recommendations.append("Consider pre-processing to reduce complexity")

        score = round(score, 6)
        return RiskAssessment(
            stage=stage,
            risk_level=bucket_risk(score, s.medium_at, s.high_at, s.critical_at),
            score=score,
            confidence=min(0.95, 0.5 + score * 0.5),
            indicators=indicators,
            recommendations=recommendations,
        )
