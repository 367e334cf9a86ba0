from __future__ import annotations

import collections
import math
import threading
from dataclasses import dataclass, field
from typing import Sequence, Union

import numpy as np

from ..store import FailureCategory


@dataclass(frozen=True)
class Success:
    duration_ms: float


@dataclass(frozen=True)
class Failure:
    category: FailureCategory
    message: str
    duration_ms: float = 0.0

    @property
    def is_connection_error(self) -> bool:
        return self.category.is_connection_error


ActionOutcome = Union[Success, Failure]


@dataclass
class StageStats:
    """Outcome accumulator for one stage, or one worker's slice of it."""

    completed: int = 0
    errors: int = 0
    connection_errors: int = 0
    total_latency_ms: float = 0.0
    latencies: list[float] = field(default_factory=list)
    error_categories: collections.Counter[str] = field(default_factory=collections.Counter)

    @property
    def outcomes(self) -> int:
        return self.completed + self.errors

    def record(self, outcome: ActionOutcome) -> None:
        if isinstance(outcome, Success):
            self.completed += 1
            self.total_latency_ms += outcome.duration_ms
            self.latencies.append(outcome.duration_ms)
            return
        self.errors += 1
        self.error_categories[outcome.category.value] += 1
        if outcome.is_connection_error:
            self.connection_errors += 1

    def absorb(self, other: StageStats) -> None:
        self.completed += other.completed
        self.errors += other.errors
        self.connection_errors += other.connection_errors
        self.total_latency_ms += other.total_latency_ms
        self.latencies.extend(other.latencies)
        self.error_categories.update(other.error_categories)

    def copy(self) -> StageStats:
        return StageStats(
            completed=self.completed,
            errors=self.errors,
            connection_errors=self.connection_errors,
            total_latency_ms=self.total_latency_ms,
            latencies=list(self.latencies),
            error_categories=collections.Counter(self.error_categories),
        )


class StatsAggregator:
    """Stage-wide totals fed by worker-local buffers.

    Workers record into their own :class:`StageStats` without locking and call
    :meth:`merge` once when they exit, so the shared lock is taken once per
    worker rather than once per request.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats = StageStats()

    def local_buffer(self) -> StageStats:
        return StageStats()

    def merge(self, buffer: StageStats) -> None:
        with self._lock:
            self._stats.absorb(buffer)

    def record(self, outcome: ActionOutcome) -> None:
        with self._lock:
            self._stats.record(outcome)

    def snapshot(self) -> StageStats:
        with self._lock:
            return self._stats.copy()


def percentile(samples: Sequence[float], p: float) -> float:
    """Nearest-rank percentile: the ceil(p% * n)-th smallest sample."""
    if not 0 <= p <= 100:
        raise ValueError("percentile must be within [0, 100]")
    if len(samples) == 0:
        return 0.0
    ordered = np.sort(np.asarray(samples, dtype=float))
    rank = math.ceil(p * len(ordered) / 100.0)
    return float(ordered[max(rank - 1, 0)])


def latency_summary(samples: Sequence[float]) -> dict[str, float]:
    if len(samples) == 0:
        return {"p50_ms": 0.0, "p95_ms": 0.0, "p99_ms": 0.0, "max_ms": 0.0}
    return {
        "p50_ms": percentile(samples, 50),
        "p95_ms": percentile(samples, 95),
        "p99_ms": percentile(samples, 99),
        "max_ms": float(np.max(samples)),
    }
