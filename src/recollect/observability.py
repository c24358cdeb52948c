"""In-process metrics for tools, retrieval and the task worker.

Timed operations call ``record_latency`` from a ``try/finally`` block; the
worker and the polling service call ``record_task_outcome`` on every retry
or terminal transition.  ``metrics_snapshot`` backs the ``get_metrics`` tool.
"""

from __future__ import annotations

import logging
from collections import Counter
from threading import Lock
from typing import Literal

from pydantic import BaseModel
from pydantic import Field

logger = logging.getLogger(__name__)

TaskOutcome = Literal["completed", "retried", "failed"]


class OperationMetrics(BaseModel):
    """Call count and latency of one named operation (e.g. ``mcp.get_memory``)."""

    calls: int = 0
    errors: int = 0
    total_ms: float = 0.0
    avg_ms: float = 0.0
    max_ms: float = 0.0


class MetricsSnapshot(BaseModel):
    operations: dict[str, OperationMetrics] = Field(
        default_factory=dict,
        description="Latency aggregates keyed by operation name.",
    )
    task_outcomes: dict[str, int] = Field(
        default_factory=dict,
        description="Task transitions counted by outcome (completed, retried, failed).",
    )


class _Metrics:
    def __init__(self) -> None:
        self._lock = Lock()
        self._operations: dict[str, OperationMetrics] = {}
        self._outcomes: Counter[str] = Counter()

    def observe(self, operation: str, duration_ms: float, ok: bool) -> None:
        duration_ms = max(float(duration_ms), 0.0)
        with self._lock:
            entry = self._operations.setdefault(operation, OperationMetrics())
            entry.calls += 1
            entry.errors += 0 if ok else 1
            entry.total_ms += duration_ms
            entry.max_ms = max(entry.max_ms, duration_ms)
        logger.debug("operation=%s duration_ms=%.3f ok=%s", operation, duration_ms, ok)

    def count(self, outcome: TaskOutcome) -> None:
        with self._lock:
            self._outcomes[outcome] += 1
        logger.info("task_outcome outcome=%s", outcome)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            operations = {
                name: OperationMetrics(
                    calls=entry.calls,
                    errors=entry.errors,
                    total_ms=round(entry.total_ms, 3),
                    avg_ms=round(entry.total_ms / entry.calls, 3),
                    max_ms=round(entry.max_ms, 3),
                )
                for name, entry in sorted(self._operations.items())
            }
            outcomes = dict(sorted(self._outcomes.items()))
        return MetricsSnapshot(operations=operations, task_outcomes=outcomes)

    def clear(self) -> None:
        with self._lock:
            self._operations.clear()
            self._outcomes.clear()


_METRICS = _Metrics()


def record_latency(*, operation: str, duration_ms: float, ok: bool = True) -> None:
    _METRICS.observe(operation, duration_ms, ok)


def record_task_outcome(outcome: TaskOutcome) -> None:
    _METRICS.count(outcome)


def metrics_snapshot() -> MetricsSnapshot:
    """Return a copy of every aggregate recorded since start (or last reset)."""
    return _METRICS.snapshot()


def reset_metrics() -> None:
    """Clear every aggregate (test helper)."""
    _METRICS.clear()
