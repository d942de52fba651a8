"""Recovery strategy catalogue and the default strategy executors.

A strategy is tagged data (:class:`StrategySpec`) plus an async executor
registered next to it. Specs are data-driven: settings can change a
strategy's priority or stage set, or disable it, without touching code.
"""

from __future__ import annotations

import copy
import inspect
import json
import time
from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import structlog
from pydantic import BaseModel, ConfigDict, Field

from pipeline_resilience.exceptions import (
    StrategyUnavailableError,
    UnknownStrategyError,
)
from pipeline_resilience.models import (
    ErrorContext,
    ErrorKind,
    FailurePattern,
    NextAction,
    RecoveryResult,
    Stage,
)

if TYPE_CHECKING:
    from pipeline_resilience.config import StrategyOverrideSettings
    from pipeline_resilience.monitoring.probes import TelemetryRecorder
    from pipeline_resilience.recovery.history import ErrorHistory

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

StageInvoker = Callable[[ErrorContext, dict[str, Any]], Awaitable[Any]]
"""Re-runs a stage for a failed context with the given parameter bag."""

StrategyExecutor = Callable[[ErrorContext], Awaitable[RecoveryResult]]


class ContentCache(Protocol):
    """Semantic cache of prior stage results."""

    def find_similar(self, key: str) -> Any: ...


class StrategySpec(BaseModel):
    """Descriptive half of a recovery strategy."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    description: str = ""
    stages: frozenset[Stage]
    priority: int = Field(ge=0)
    prevention_score: float = Field(default=0.5, ge=0.0, le=1.0)


@dataclass(frozen=True)
class RegisteredStrategy:
    """A strategy spec bound to its executor."""

    spec: StrategySpec
    execute: StrategyExecutor

    @property
    def id(self) -> str:
        return self.spec.id

    def applies_to(self, stage: Stage) -> bool:
        return stage in self.spec.stages


class StrategyRegistry:
    """Priority-ordered catalogue of recovery strategies."""

    def __init__(self) -> None:
        self._strategies: list[RegisteredStrategy] = []

    def register(self, spec: StrategySpec, execute: StrategyExecutor) -> None:
        if any(s.id == spec.id for s in self._strategies):
            msg = f"Strategy {spec.id!r} is already registered"
            raise ValueError(msg)
        self._strategies.append(RegisteredStrategy(spec=spec, execute=execute))
        # Stable sort keeps registration order among equal priorities.
        self._strategies.sort(key=lambda s: s.spec.priority)

    def get(self, strategy_id: str) -> RegisteredStrategy:
        for strategy in self._strategies:
            if strategy.id == strategy_id:
                return strategy
        raise UnknownStrategyError(f"No strategy registered as {strategy_id!r}")

    def strategies(self) -> list[RegisteredStrategy]:
        return list(self._strategies)

    def applicable(self, stage: Stage) -> list[RegisteredStrategy]:
        return [s for s in self._strategies if s.applies_to(stage)]

    def apply_overrides(self, overrides: dict[str, StrategyOverrideSettings]) -> None:
        """Reconfigure registered strategies from settings.

        Overrides naming an unregistered strategy are logged and skipped.
        """
        for strategy_id, override in overrides.items():
            try:
                current = self.get(strategy_id)
            except UnknownStrategyError:
                logger.warning("strategy_override_unknown", strategy=strategy_id)
                continue

            self._strategies.remove(current)
            if not override.enabled:
                logger.info("strategy_disabled", strategy=strategy_id)
                continue

            update: dict[str, Any] = {}
            if override.priority is not None:
                update["priority"] = override.priority
            if override.stages is not None:
                update["stages"] = frozenset(override.stages)
            if override.prevention_score is not None:
                update["prevention_score"] = override.prevention_score
            self.register(current.spec.model_copy(update=update), current.execute)

    def __len__(self) -> int:
        return len(self._strategies)

    def __iter__(self) -> Iterator[RegisteredStrategy]:
        return iter(list(self._strategies))


# ---------------------------------------------------------------------------
# Default strategies
# ---------------------------------------------------------------------------

INTELLIGENT_RETRY = "intelligent_retry"
DEGRADED_QUALITY_FALLBACK = "degraded_quality_fallback"
CACHE_RECOVERY = "cache_recovery"
ALTERNATIVE_ALGORITHM = "alternative_algorithm"
MINIMAL_VIABLE_OUTPUT = "minimal_viable_output"

DEFAULT_STRATEGY_SPECS: tuple[StrategySpec, ...] = (
    StrategySpec(
        id=INTELLIGENT_RETRY,
        name="Intelligent Retry with Adaptation",
        description="Retry with parameters nudged toward conservative settings",
        stages=frozenset(
            {
                Stage.TRANSCRIPTION,
                Stage.SEGMENTATION,
                Stage.ANALYSIS,
                Stage.DIAGRAM_DETECTION,
                Stage.LAYOUT_GENERATION,
                Stage.RENDERING,
            }
        ),
        priority=1,
        prevention_score=0.7,
    ),
    StrategySpec(
        id=DEGRADED_QUALITY_FALLBACK,
        name="Degraded Quality Fallback",
        description="Reduce output fidelity to ensure completion",
        stages=frozenset({Stage.LAYOUT_GENERATION, Stage.ANIMATION, Stage.RENDERING}),
        priority=2,
        prevention_score=0.5,
    ),
    StrategySpec(
        id=CACHE_RECOVERY,
        name="Cache-Based Recovery",
        description="Adapt a cached result from similar content",
        stages=frozenset(
            {
                Stage.ANALYSIS,
                Stage.DIAGRAM_DETECTION,
                Stage.LAYOUT_GENERATION,
                Stage.RENDERING,
            }
        ),
        priority=3,
        prevention_score=0.8,
    ),
    StrategySpec(
        id=ALTERNATIVE_ALGORITHM,
        name="Alternative Algorithm Fallback",
        description="Switch to a simpler implementation of the stage",
        stages=frozenset({Stage.DIAGRAM_DETECTION, Stage.LAYOUT_GENERATION}),
        priority=4,
        prevention_score=0.6,
    ),
    StrategySpec(
        id=MINIMAL_VIABLE_OUTPUT,
        name="Minimal Viable Output",
        description="Synthesize the smallest valid output so downstream stages run",
        stages=frozenset(
            {
                Stage.ANALYSIS,
                Stage.DIAGRAM_DETECTION,
                Stage.LAYOUT_GENERATION,
                Stage.RENDERING,
            }
        ),
        priority=5,
        prevention_score=0.3,
    ),
)

_RETRY_FREQUENCY_LIMIT = 2

_CONSERVATIVE_PARAMS: dict[str, Any] = {
    "confidence_threshold": 0.6,
    "timeout": 5.0,
    "retry_delay": 1.0,
}

_STAGE_RETRY_PARAMS: dict[Stage, dict[str, Any]] = {
    Stage.TRANSCRIPTION: {"model_size": "base", "chunk_size": 30},
    Stage.SEGMENTATION: {"max_segment_seconds": 15},
    Stage.ANALYSIS: {"complexity_limit": 0.7, "max_segments": 10},
    Stage.DIAGRAM_DETECTION: {"max_candidates": 3},
    Stage.LAYOUT_GENERATION: {"max_nodes": 20, "layout_algorithm": "simple"},
    Stage.RENDERING: {"batch_size": 4},
}

_DEGRADED_PARAMS: dict[str, Any] = {
    "quality": "low",
    "resolution": "reduced",
    "complexity": "minimal",
    "animations": "disabled",
}

_MINIMAL_OUTPUTS: dict[Stage, dict[str, Any]] = {
    Stage.TRANSCRIPTION: {"text": "", "segments": []},
    Stage.SEGMENTATION: {"segments": []},
    Stage.ANALYSIS: {"concepts": [], "relationships": []},
    Stage.DIAGRAM_DETECTION: {"type": "flow", "confidence": 0.5},
    Stage.LAYOUT_GENERATION: {"nodes": [], "edges": [], "layout": "basic"},
    Stage.ANIMATION: {"keyframes": []},
    Stage.RENDERING: {"frames": [], "quality": "minimal"},
    Stage.EXPORT: {"format": "json", "payload": None},
}


def adapt_parameters(context: ErrorContext, pattern: FailurePattern) -> dict[str, Any]:
    """Parameters for a retry, more conservative for recurring failures."""
    params: dict[str, Any] = {}
    if pattern.frequency > _RETRY_FREQUENCY_LIMIT:
        params.update(_CONSERVATIVE_PARAMS)
    params.update(_STAGE_RETRY_PARAMS.get(context.stage, {}))
    return params


def degraded_parameters(context: ErrorContext) -> dict[str, Any]:
    """Reduced-fidelity parameters; session preferences may pin any of them."""
    preferences = context.session.preferences
    return {
        key: preferences.get(key, value) for key, value in _DEGRADED_PARAMS.items()
    }


def minimal_output(stage: Stage) -> dict[str, Any]:
    output = _MINIMAL_OUTPUTS.get(stage, {"minimal": True})
    return {**copy.deepcopy(output), "stage": str(stage)}


def cache_key(payload: Any) -> str:
    """Canonical JSON for a stage input, used as the cache lookup key."""
    return json.dumps(payload, sort_keys=True, default=str)


class RecoveryToolkit:
    """Executors for the default strategies.

    Holds the collaborators the strategies need: the error history for
    pattern analysis, stage re-invocation callbacks, alternate-algorithm
    callbacks, and the content cache. A strategy whose collaborator is
    missing for a stage fails cleanly so the chain moves on.
    """

    def __init__(
        self,
        history: ErrorHistory,
        stage_callbacks: dict[Stage, StageInvoker] | None = None,
        alternative_callbacks: dict[Stage, StageInvoker] | None = None,
        cache: ContentCache | None = None,
        telemetry: TelemetryRecorder | None = None,
    ) -> None:
        self.history = history
        self.stage_callbacks = dict(stage_callbacks or {})
        self.alternative_callbacks = dict(alternative_callbacks or {})
        self.cache = cache
        self.telemetry = telemetry

    def _callback(
        self, callbacks: dict[Stage, StageInvoker], context: ErrorContext, kind: str
    ) -> StageInvoker:
        invoker = callbacks.get(context.stage)
        if invoker is None:
            raise StrategyUnavailableError(
                f"No {kind} callback registered for {context.stage}"
            )
        return invoker

    async def intelligent_retry(self, context: ErrorContext) -> RecoveryResult:
        start = time.perf_counter()
        pattern = self.history.analyze(context)
        params = adapt_parameters(context, pattern)
        try:
            if context.category is ErrorKind.CATASTROPHIC:
                raise StrategyUnavailableError(
                    f"Intelligent retry skips catastrophic {context.error_kind}"
                )
            invoker = self._callback(self.stage_callbacks, context, "stage")
            result = await invoker(context, params)
        except Exception as exc:
            logger.info("intelligent_retry_failed", error=str(exc))
            return _failure(INTELLIGENT_RETRY, start, NextAction.FALLBACK, 0.3, False)

        return RecoveryResult(
            success=True,
            result=result,
            fallback_used=False,
            elapsed_seconds=time.perf_counter() - start,
            strategy=INTELLIGENT_RETRY,
            confidence=0.85,
            improvements=[f"Adapted {len(params)} parameters"],
            next_action=NextAction.RETRY,
        )

    async def degraded_quality_fallback(self, context: ErrorContext) -> RecoveryResult:
        start = time.perf_counter()
        params = degraded_parameters(context)
        try:
            invoker = self._callback(self.stage_callbacks, context, "stage")
            result = await invoker(context, params)
        except Exception as exc:
            logger.info("degraded_quality_fallback_failed", error=str(exc))
            return _failure(
                DEGRADED_QUALITY_FALLBACK, start, NextAction.ESCALATE, 0.2, True
            )

        return RecoveryResult(
            success=True,
            result=result,
            fallback_used=True,
            elapsed_seconds=time.perf_counter() - start,
            strategy=DEGRADED_QUALITY_FALLBACK,
            confidence=0.7,
            improvements=["Reduced quality for stability"],
            next_action=NextAction.RETRY,
        )

    async def cache_recovery(self, context: ErrorContext) -> RecoveryResult:
        start = time.perf_counter()
        try:
            if self.cache is None:
                raise StrategyUnavailableError("No content cache configured")
            found = self.cache.find_similar(cache_key(context.input))
            if inspect.isawaitable(found):
                found = await found
            if self.telemetry is not None:
                self.telemetry.record_cache_lookup(hit=found is not None)
            if found is None:
                raise LookupError("No suitable cached content found")
        except Exception as exc:
            logger.info("cache_recovery_failed", error=str(exc))
            return _failure(CACHE_RECOVERY, start, NextAction.FALLBACK, 0.1, True)

        return RecoveryResult(
            success=True,
            result=_adapt_cached(found, context),
            fallback_used=True,
            elapsed_seconds=time.perf_counter() - start,
            strategy=CACHE_RECOVERY,
            confidence=0.75,
            improvements=["Used cached similar result"],
            next_action=NextAction.RETRY,
        )

    async def alternative_algorithm(self, context: ErrorContext) -> RecoveryResult:
        start = time.perf_counter()
        try:
            invoker = self._callback(self.alternative_callbacks, context, "alternative")
            result = await invoker(context, {"algorithm": "alternative"})
        except Exception as exc:
            logger.info("alternative_algorithm_failed", error=str(exc))
            return _failure(
                ALTERNATIVE_ALGORITHM, start, NextAction.ESCALATE, 0.15, True
            )

        return RecoveryResult(
            success=True,
            result=result,
            fallback_used=True,
            elapsed_seconds=time.perf_counter() - start,
            strategy=ALTERNATIVE_ALGORITHM,
            confidence=0.65,
            improvements=["Used alternative algorithm"],
            next_action=NextAction.RETRY,
        )

    async def minimal_viable_output(self, context: ErrorContext) -> RecoveryResult:
        start = time.perf_counter()
        return RecoveryResult(
            success=True,
            result=minimal_output(context.stage),
            fallback_used=True,
            elapsed_seconds=time.perf_counter() - start,
            strategy=MINIMAL_VIABLE_OUTPUT,
            confidence=0.5,
            improvements=["Generated minimal viable output"],
            next_action=NextAction.RETRY,
        )

    def executors(self) -> dict[str, StrategyExecutor]:
        return {
            INTELLIGENT_RETRY: self.intelligent_retry,
            DEGRADED_QUALITY_FALLBACK: self.degraded_quality_fallback,
            CACHE_RECOVERY: self.cache_recovery,
            ALTERNATIVE_ALGORITHM: self.alternative_algorithm,
            MINIMAL_VIABLE_OUTPUT: self.minimal_viable_output,
        }


def _failure(
    strategy: str,
    start: float,
    next_action: NextAction,
    confidence: float,
    fallback_used: bool,
) -> RecoveryResult:
    return RecoveryResult(
        success=False,
        fallback_used=fallback_used,
        elapsed_seconds=time.perf_counter() - start,
        strategy=strategy,
        confidence=confidence,
        next_action=next_action,
    )


def _adapt_cached(cached: Any, context: ErrorContext) -> dict[str, Any]:
    base = dict(cached) if isinstance(cached, dict) else {"data": cached}
    return {**base, "adapted": True, "original_context": str(context.stage)}


def build_default_registry(
    toolkit: RecoveryToolkit,
    specs: Iterable[StrategySpec] = DEFAULT_STRATEGY_SPECS,
) -> StrategyRegistry:
    """Registry with the default specs bound to ``toolkit``'s executors."""
    executors = toolkit.executors()
    registry = StrategyRegistry()
    for spec in specs:
        registry.register(spec, executors[spec.id])
    return registry
