"""Centralized exception hierarchy for the pipeline-resilience package.

All domain-specific exceptions inherit from ``ResilienceError`` so
callers can catch the entire family with a single ``except`` clause.
"""

from __future__ import annotations


class ResilienceError(Exception):
    """Base exception for all pipeline-resilience errors."""


# ---------------------------------------------------------------------------
# Circuit breaker errors
# ---------------------------------------------------------------------------


class CircuitOpenError(ResilienceError):
    """Raised when a gated request targets a stage whose breaker is open."""

    def __init__(self, stage: str) -> None:
        super().__init__(f"Circuit breaker for {stage} is open - request rejected")
        self.stage = stage


# ---------------------------------------------------------------------------
# Strategy errors
# ---------------------------------------------------------------------------


class StrategyError(ResilienceError):
    """Base exception for recovery strategy execution."""


class StrategyUnavailableError(StrategyError):
    """Raised when a strategy lacks a collaborator it needs for this stage."""


class StrategyTimeoutError(StrategyError):
    """Raised when a strategy exceeds its execution deadline."""


class UnknownStrategyError(StrategyError):
    """Raised when looking up a strategy id that is not registered."""


# ---------------------------------------------------------------------------
# Preventive action errors
# ---------------------------------------------------------------------------


class UnknownPreventiveActionError(ResilienceError):
    """Raised when invoking a preventive action name that is not registered."""


# ---------------------------------------------------------------------------
# Lifecycle errors
# ---------------------------------------------------------------------------


class EngineShutdownError(ResilienceError):
    """Raised when work is submitted after the engine started shutting down."""
