"""Shared pytest fixtures for the pipeline-resilience test suite."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from pipeline_resilience.models import (
    ErrorContext,
    ErrorKind,
    NextAction,
    RecoveryResult,
    SessionMetadata,
    Stage,
)
from pipeline_resilience.monitoring.probes import (
    CACHE_EFFECTIVENESS,
    ERROR_RATE,
    MEMORY_PRESSURE,
    PROCESSING_LATENCY,
)
from pipeline_resilience.recovery.strategies import StrategyRegistry, StrategySpec

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Failure contexts
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_context(clock: FakeClock) -> Callable[..., ErrorContext]:
    """Factory for ErrorContexts stamped with the fake clock's time."""

    def _make(
        stage: Stage = Stage.ANALYSIS,
        component: str = "concept_extractor",
        error: str = "boom",
        error_kind: str = "ValueError",
        category: ErrorKind | None = None,
        retry_count: int = 0,
        input: Any = None,  # noqa: A002
        timestamp: float | None = None,
    ) -> ErrorContext:
        return ErrorContext(
            stage=stage,
            component=component,
            input=input if input is not None else {"text": "hello"},
            error=error,
            error_kind=error_kind,
            category=category,
            timestamp=clock() if timestamp is None else timestamp,
            retry_count=retry_count,
            session=SessionMetadata(session_id="session-test"),
        )

    return _make


# ---------------------------------------------------------------------------
# Stub strategies
# ---------------------------------------------------------------------------


class StubStrategy:
    """Counting strategy executor with a scripted outcome."""

    def __init__(
        self,
        strategy_id: str,
        succeed: bool = True,
        raises: Exception | None = None,
        fallback_used: bool = False,
    ) -> None:
        self.strategy_id = strategy_id
        self.succeed = succeed
        self.raises = raises
        self.fallback_used = fallback_used
        self.calls = 0

    async def __call__(self, context: ErrorContext) -> RecoveryResult:
        self.calls += 1
        if self.raises is not None:
            raise self.raises
        return RecoveryResult(
            success=self.succeed,
            result={"recovered": self.succeed} if self.succeed else None,
            fallback_used=self.fallback_used,
            strategy=self.strategy_id,
            confidence=0.8 if self.succeed else 0.1,
            next_action=NextAction.RETRY if self.succeed else NextAction.FALLBACK,
        )


def _register_stub(
    registry: StrategyRegistry,
    strategy_id: str,
    priority: int,
    stages: set[Stage],
    **kwargs: Any,
) -> StubStrategy:
    stub = StubStrategy(strategy_id, **kwargs)
    registry.register(
        StrategySpec(
            id=strategy_id,
            name=strategy_id.replace("_", " ").title(),
            stages=frozenset(stages),
            priority=priority,
        ),
        stub,
    )
    return stub


@pytest.fixture()
def register_stub() -> Callable[..., StubStrategy]:
    """Register a counting stub strategy: ``register_stub(registry, id, prio, stages)``."""
    return _register_stub


@pytest.fixture()
def quiet_probes() -> dict[str, Callable[[], float | None]]:
    """Probe overrides that report a healthy, idle system."""
    return {
        MEMORY_PRESSURE: lambda: 0.1,
        PROCESSING_LATENCY: lambda: None,
        ERROR_RATE: lambda: None,
        CACHE_EFFECTIVENESS: lambda: None,
    }
