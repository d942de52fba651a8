"""Unit tests for pipeline_resilience.monitoring.risk."""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import pytest

from pipeline_resilience.config import RiskSettings
from pipeline_resilience.models import (
    ErrorContext,
    PredictiveIndicator,
    RiskLevel,
    Stage,
    SystemHealth,
)
from pipeline_resilience.monitoring.risk import (
    PredictiveRiskAssessor,
    assess_input_complexity,
    bucket_risk,
    nesting_depth,
    serialized_size,
)
from pipeline_resilience.recovery.history import ErrorHistory

if TYPE_CHECKING:
    from tests.conftest import FakeClock

MakeContext = Callable[..., ErrorContext]


def _health(
    stage_score: float = 1.0, memory: float = 0.1, stage: Stage = Stage.ANALYSIS
) -> SystemHealth:
    stages = dict.fromkeys(Stage, 1.0)
    stages[stage] = stage_score
    return SystemHealth(
        stages=stages,
        indicators=[
            PredictiveIndicator(
                name="memory_pressure", threshold=0.8, current_value=memory
            )
        ],
    )


def _assessor(
    history: ErrorHistory, clock: FakeClock, health: SystemHealth | None = None
) -> PredictiveRiskAssessor:
    snapshot = health or _health()
    return PredictiveRiskAssessor(history, lambda: snapshot, clock=clock)


def _record_errors(
    history: ErrorHistory, make_context: MakeContext, count: int, **kwargs: object
) -> None:
    for _ in range(count):
        history.record(make_context(**kwargs))


# ---------------------------------------------------------------------------
# TestComplexity
# ---------------------------------------------------------------------------


class TestComplexity:
    """Input complexity heuristic."""

    def test_nesting_depth(self) -> None:
        assert nesting_depth("flat") == 0
        assert nesting_depth({}) == 1
        assert nesting_depth({"a": [{"b": 1}]}) == 3

    def test_small_input_is_simple(self) -> None:
        assert assess_input_complexity({"text": "hi"}) < 0.1

    def test_large_input_saturates(self) -> None:
        assert assess_input_complexity({"text": "x" * 20_000}) == 1.0

    def test_non_string_keys_fall_back_to_repr(self) -> None:
        payload = {(0, 1): "edge"}
        assert serialized_size(payload) == len(repr(payload))
        assert 0.0 < assess_input_complexity(payload) < 0.1

    def test_self_referencing_payload(self) -> None:
        payload: dict[str, object] = {"name": "loop"}
        payload["self"] = payload
        assert nesting_depth(payload) == 1
        assert serialized_size(payload) == len(repr(payload))
        assert 0.0 < assess_input_complexity(payload) < 0.1

    def test_shared_subtree_counted_on_each_branch(self) -> None:
        shared = [1, 2]
        assert nesting_depth({"a": shared, "b": [shared]}) == 3

    @pytest.mark.parametrize(
        "payload", [{(0, 1): "edge"}, [1, {"x": None}]], ids=["tuple_key", "list"]
    )
    def test_assess_accepts_opaque_payloads(
        self, clock: FakeClock, payload: object
    ) -> None:
        assessment = _assessor(ErrorHistory(), clock).assess(Stage.ANALYSIS, payload)
        assert assessment.risk_level is RiskLevel.LOW

    def test_assess_accepts_cyclic_payload(self, clock: FakeClock) -> None:
        payload: list[object] = [1]
        payload.append(payload)
        assessment = _assessor(ErrorHistory(), clock).assess(Stage.ANALYSIS, payload)
        assert assessment.risk_level is RiskLevel.LOW


# ---------------------------------------------------------------------------
# TestBuckets
# ---------------------------------------------------------------------------


class TestBuckets:
    """Score to risk level bucketing."""

    @pytest.mark.parametrize(
        ("score", "expected"),
        [
            (0.0, RiskLevel.LOW),
            (0.19, RiskLevel.LOW),
            (0.2, RiskLevel.MEDIUM),
            (0.49, RiskLevel.MEDIUM),
            (0.5, RiskLevel.HIGH),
            (0.79, RiskLevel.HIGH),
            (0.8, RiskLevel.CRITICAL),
            (1.0, RiskLevel.CRITICAL),
        ],
    )
    def test_boundaries(self, score: float, expected: RiskLevel) -> None:
        assert bucket_risk(score) is expected


# ---------------------------------------------------------------------------
# TestAssessor
# ---------------------------------------------------------------------------


class TestAssessor:
    """Weighted combination of health, memory, errors and complexity."""

    def test_quiet_system_is_low_risk(self, clock: FakeClock) -> None:
        assessment = _assessor(ErrorHistory(), clock).assess(Stage.ANALYSIS)
        assert assessment.risk_level is RiskLevel.LOW
        assert assessment.score == 0.0
        assert assessment.confidence == 0.5
        assert assessment.indicators == []

    def test_recent_errors_raise_risk(
        self, make_context: MakeContext, clock: FakeClock
    ) -> None:
        history = ErrorHistory()
        _record_errors(history, make_context, 4)
        assessment = _assessor(history, clock).assess(Stage.ANALYSIS)
        assert assessment.score == 0.4
        assert assessment.risk_level is RiskLevel.MEDIUM
        assert assessment.indicators == ["4 recent errors in analysis"]

    def test_errors_outside_window_ignored(
        self, make_context: MakeContext, clock: FakeClock
    ) -> None:
        history = ErrorHistory()
        _record_errors(history, make_context, 5, timestamp=clock() - 4000)
        assessment = _assessor(history, clock).assess(Stage.ANALYSIS)
        assert assessment.score == 0.0

    def test_other_stage_errors_ignored(
        self, make_context: MakeContext, clock: FakeClock
    ) -> None:
        history = ErrorHistory()
        _record_errors(history, make_context, 5, stage=Stage.RENDERING)
        assessment = _assessor(history, clock).assess(Stage.ANALYSIS)
        assert assessment.risk_level is RiskLevel.LOW

    def test_every_signal_is_critical(
        self, make_context: MakeContext, clock: FakeClock
    ) -> None:
        history = ErrorHistory()
        _record_errors(history, make_context, 5)
        health = _health(stage_score=0.5, memory=0.95)
        assessment = _assessor(history, clock, health).assess(
            Stage.ANALYSIS, {"text": "x" * 20_000}
        )
        assert assessment.score == 1.0
        assert assessment.risk_level is RiskLevel.CRITICAL
        assert assessment.confidence == 0.95
        assert len(assessment.recommendations) == 4
        assert "Run memory cleanup before processing" in assessment.recommendations

    def test_monotonic_in_error_count(
        self, make_context: MakeContext, clock: FakeClock
    ) -> None:
        history = ErrorHistory()
        assessor = _assessor(history, clock)
        previous = assessor.assess(Stage.ANALYSIS)
        for _ in range(8):
            history.record(make_context())
            current = assessor.assess(Stage.ANALYSIS)
            assert current.score >= previous.score
            assert current.risk_level.rank >= previous.risk_level.rank
            previous = current

    def test_custom_weights(self, make_context: MakeContext, clock: FakeClock) -> None:
        history = ErrorHistory()
        _record_errors(history, make_context, 2)
        assessor = PredictiveRiskAssessor(
            history,
            _health,
            RiskSettings(error_count_limit=1, error_weight=0.9),
            clock=clock,
        )
        assert assessor.assess(Stage.ANALYSIS).risk_level is RiskLevel.CRITICAL

    def test_does_not_mutate_history(
        self, make_context: MakeContext, clock: FakeClock
    ) -> None:
        history = ErrorHistory()
        _record_errors(history, make_context, 2)
        _assessor(history, clock).assess(Stage.ANALYSIS, {"a": 1})
        assert history.total() == 2
