"""Breaker-guarded, priority-ordered recovery for failed pipeline stages."""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import TYPE_CHECKING

import structlog

from pipeline_resilience.exceptions import StrategyTimeoutError
from pipeline_resilience.logging import recovery_logging_context
from pipeline_resilience.models import (
    MAX_RETRY_COUNT,
    ErrorContext,
    NextAction,
    RecoveryResult,
    Stage,
)

if TYPE_CHECKING:
    from pipeline_resilience.config import RecoverySettings
    from pipeline_resilience.recovery.breaker import BreakerBank
    from pipeline_resilience.recovery.history import ErrorHistory
    from pipeline_resilience.recovery.strategies import (
        RegisteredStrategy,
        StrategyRegistry,
    )

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_STRATEGY_TIMEOUT_SECONDS = 30.0

CIRCUIT_BREAKER_STRATEGY = "circuit_breaker"
NO_STRATEGY = "none"


class RecoveryOrchestrator:
    """Decides how to recover from one stage failure.

    Strategies run strictly one at a time in ascending priority; the first
    success wins and later, cheaper strategies never execute. Every failed
    attempt counts against the stage's circuit breaker. :meth:`recover`
    never raises: strategy exceptions and timeouts become failed attempts.
    """

    def __init__(
        self,
        registry: StrategyRegistry,
        history: ErrorHistory,
        breakers: BreakerBank,
        strategy_timeout_seconds: float = _DEFAULT_STRATEGY_TIMEOUT_SECONDS,
        max_retry_count: int = MAX_RETRY_COUNT,
    ) -> None:
        self.registry = registry
        self.history = history
        self.breakers = breakers
        self.strategy_timeout_seconds = strategy_timeout_seconds
        self.max_retry_count = min(max_retry_count, MAX_RETRY_COUNT)
        self._recoveries: Counter[tuple[Stage, str]] = Counter()

    @classmethod
    def from_settings(
        cls,
        settings: RecoverySettings,
        registry: StrategyRegistry,
        history: ErrorHistory,
        breakers: BreakerBank,
    ) -> RecoveryOrchestrator:
        return cls(
            registry=registry,
            history=history,
            breakers=breakers,
            strategy_timeout_seconds=settings.strategy_timeout_seconds,
            max_retry_count=settings.max_retry_count,
        )

    @property
    def recovery_counts(self) -> dict[str, int]:
        """Successful recoveries keyed ``"stage:strategy"``."""
        return {
            f"{stage}:{strategy}": count
            for (stage, strategy), count in self._recoveries.items()
        }

    async def recover(self, context: ErrorContext) -> RecoveryResult:
        """Try to recover from ``context``'s failure.

        Returns:
            The first successful strategy result, or a failed result with
            ``next_action=abort`` when the breaker is open or every
            applicable strategy failed.
        """
        self.history.record(context)
        breaker = self.breakers.get(context.stage)

        with recovery_logging_context(
            str(context.stage),
            context.component,
            session_id=context.session.session_id,
        ) as log:
            if breaker.is_open():
                log.warning("recovery_rejected_circuit_open")
                return RecoveryResult(
                    success=False,
                    elapsed_seconds=0.0,
                    strategy=CIRCUIT_BREAKER_STRATEGY,
                    improvements=["Circuit breaker is open"],
                    next_action=NextAction.ABORT,
                )

            start = time.perf_counter()
            candidates = (
                self.registry.applicable(context.stage)
                if context.retry_count < self.max_retry_count
                else []
            )
            if not candidates:
                log.info("recovery_no_strategies", retry_count=context.retry_count)

            for strategy in candidates:
                result = await self._attempt(strategy, context)
                if result.success:
                    breaker.record_success()
                    self._learn(context, strategy)
                    log.info(
                        "recovery_succeeded",
                        strategy=strategy.id,
                        confidence=result.confidence,
                        category=context.category,
                        suggested_strategy=context.suggested_strategy,
                    )
                    return result.model_copy(
                        update={
                            "improvements": [
                                *result.improvements,
                                f"Recovered {context.stage} via {strategy.id}",
                            ]
                        }
                    )
                breaker.record_failure()

            breaker.record_failure()
            log.error(
                "recovery_exhausted",
                strategies_tried=len(candidates),
                category=context.category,
                breaker_state=str(breaker.state),
            )
            return RecoveryResult(
                success=False,
                elapsed_seconds=time.perf_counter() - start,
                strategy=NO_STRATEGY,
                next_action=NextAction.ABORT,
            )

    async def _attempt(
        self, strategy: RegisteredStrategy, context: ErrorContext
    ) -> RecoveryResult:
        start = time.perf_counter()
        try:
            try:
                return await asyncio.wait_for(
                    strategy.execute(context),
                    timeout=self.strategy_timeout_seconds,
                )
            except TimeoutError as exc:
                raise StrategyTimeoutError(
                    f"{strategy.id} exceeded {self.strategy_timeout_seconds}s"
                ) from exc
        except Exception as exc:
            logger.warning(
                "strategy_failed",
                strategy=strategy.id,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            return RecoveryResult(
                success=False,
                elapsed_seconds=time.perf_counter() - start,
                strategy=strategy.id,
                next_action=NextAction.FALLBACK,
            )

    def _learn(self, context: ErrorContext, strategy: RegisteredStrategy) -> None:
        self._recoveries[(context.stage, strategy.id)] += 1
        logger.debug(
            "recovery_learned",
            strategy=strategy.id,
            total=self._recoveries[(context.stage, strategy.id)],
        )
