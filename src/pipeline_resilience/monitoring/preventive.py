"""Named maintenance operations run when risk indicators cross thresholds."""

from __future__ import annotations

import gc
import inspect
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from pipeline_resilience.exceptions import UnknownPreventiveActionError

if TYPE_CHECKING:
    from pipeline_resilience.models import Clock
    from pipeline_resilience.recovery.history import ErrorHistory

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

PreventiveAction = Callable[[], Any]
"""No-argument, idempotent operation; may be sync or return an awaitable."""


class PreventiveActionRunner:
    """Name -> action map, invoked only by name or all together."""

    def __init__(self, actions: dict[str, PreventiveAction] | None = None) -> None:
        self._actions: dict[str, PreventiveAction] = dict(actions or {})

    def register(self, name: str, action: PreventiveAction) -> None:
        self._actions[name] = action

    def names(self) -> list[str]:
        return list(self._actions)

    async def run(self, name: str) -> None:
        """Run a single action; its exceptions propagate to the caller.

        Raises:
            UnknownPreventiveActionError: If no action is registered as ``name``.
        """
        action = self._actions.get(name)
        if action is None:
            raise UnknownPreventiveActionError(f"No preventive action named {name!r}")
        outcome = action()
        if inspect.isawaitable(outcome):
            await outcome

    async def run_all(self) -> dict[str, bool]:
        """Run every action sequentially; a failing one does not stop the rest.

        Returns:
            Mapping of action name to whether it completed without raising.
        """
        results: dict[str, bool] = {}
        for name in self.names():
            try:
                await self.run(name)
            except Exception as exc:
                logger.warning("preventive_action_failed", action=name, error=str(exc))
                results[name] = False
            else:
                logger.info("preventive_action_completed", action=name)
                results[name] = True
        return results


def default_preventive_actions(
    history: ErrorHistory,
    retention_seconds: float,
    clock: Clock = time.time,
) -> dict[str, PreventiveAction]:
    """Built-in actions; host-supplied actions with the same name replace them."""

    def memory_cleanup() -> None:
        history.prune(older_than=clock() - retention_seconds)
        gc.collect()

    return {"memory_cleanup": memory_cleanup}
