"""Per-stage bounded failure log and pattern extraction."""

from __future__ import annotations

import threading
from collections import Counter, deque
from typing import TYPE_CHECKING

import structlog

from pipeline_resilience.models import ErrorContext, FailurePattern, Stage

if TYPE_CHECKING:
    from pipeline_resilience.config import HistorySettings

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_DEFAULT_MAX_ENTRIES = 100
_COMMON_CAUSE_LIMIT = 3


class ErrorHistory:
    """Append-only ring buffer of failures, one per stage.

    Oldest records are evicted once a stage holds ``max_entries`` of them.
    Reads return copies so the monitor can iterate while the orchestrator
    appends.
    """

    def __init__(self, max_entries: int = _DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._records: dict[Stage, deque[ErrorContext]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: HistorySettings) -> ErrorHistory:
        return cls(max_entries=settings.max_entries_per_stage)

    def record(self, context: ErrorContext) -> None:
        with self._lock:
            records = self._records.get(context.stage)
            if records is None:
                records = deque(maxlen=self.max_entries)
                self._records[context.stage] = records
            records.append(context)

    def for_stage(self, stage: Stage) -> list[ErrorContext]:
        with self._lock:
            return list(self._records.get(stage, ()))

    def count_since(self, stage: Stage, cutoff: float) -> int:
        """Number of failures for ``stage`` strictly after ``cutoff``."""
        return sum(1 for record in self.for_stage(stage) if record.timestamp > cutoff)

    def total_since(self, cutoff: float) -> int:
        return sum(self.count_since(stage, cutoff) for stage in Stage)

    def total(self) -> int:
        with self._lock:
            return sum(len(records) for records in self._records.values())

    def prune(self, older_than: float) -> int:
        """Drop records with a timestamp at or before ``older_than``.

        Returns:
            Number of records removed.
        """
        removed = 0
        with self._lock:
            for stage, records in self._records.items():
                kept = deque(
                    (r for r in records if r.timestamp > older_than),
                    maxlen=self.max_entries,
                )
                removed += len(records) - len(kept)
                self._records[stage] = kept
        if removed:
            logger.debug("error_history_pruned", removed=removed)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def analyze(self, context: ErrorContext) -> FailurePattern:
        """Summarize prior failures related to ``context``.

        ``frequency`` and ``last_occurrence`` cover records sharing the
        pattern key. ``common_causes`` ranks the error kinds and components
        of the wider set of same-stage records with the same message or the
        same component. The context itself is excluded when it has already
        been recorded, so only earlier occurrences count.
        """
        prior = [r for r in self.for_stage(context.stage) if r is not context]
        matches = [r for r in prior if r.pattern_key == context.pattern_key]
        causes: Counter[str] = Counter()
        for record in prior:
            if record.error == context.error or record.component == context.component:
                causes[record.error_kind] += 1
                causes[record.component] += 1

        return FailurePattern(
            key=context.pattern_key,
            frequency=len(matches),
            last_occurrence=max((r.timestamp for r in matches), default=None),
            common_causes=[
                cause for cause, _ in causes.most_common(_COMMON_CAUSE_LIMIT)
            ],
        )
