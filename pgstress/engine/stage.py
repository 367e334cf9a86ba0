from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable

from .collector import StatsAggregator, latency_summary
from .config import FailurePolicy, StageConfig
from .load import ActionExecutor, TaskSource, WorkerPool

LOGGER = logging.getLogger("pgstress.engine.stage")


@dataclass(frozen=True)
class StageResult:
    concurrency: int
    request_count: int
    completed: int
    errors: int
    connection_errors: int
    elapsed_s: float
    throughput: float
    avg_latency_ms: float
    p50_ms: float
    p95_ms: float
    p99_ms: float
    max_latency_ms: float
    error_rate: float
    critical_failure: bool
    error_breakdown: dict[str, int] = field(default_factory=dict)

    def as_row(self) -> dict[str, Any]:
        row = asdict(self)
        breakdown = row.pop("error_breakdown")
        for category, count in sorted(breakdown.items()):
            row[f"errors_{category}"] = count
        return row


class StageRunner:
    """Runs one concurrency level against a dedicated pool sized to that level."""

    def __init__(
        self,
        pool_factory: Callable[[int], Any],
        policy: FailurePolicy | None = None,
        worker_pool: WorkerPool | None = None,
        executor_factory: Callable[[Any], ActionExecutor] = ActionExecutor,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._pool_factory = pool_factory
        self._policy = policy or FailurePolicy()
        self._worker_pool = worker_pool or WorkerPool()
        self._executor_factory = executor_factory
        self._clock = clock

    @property
    def policy(self) -> FailurePolicy:
        return self._policy

    def run_stage(self, config: StageConfig) -> StageResult:
        LOGGER.info(
            "Starting stage: concurrency=%d requests=%d",
            config.concurrency,
            config.request_count,
        )
        task_source = TaskSource(config.request_count)
        aggregator = StatsAggregator()

        pool = self._pool_factory(config.concurrency)
        try:
            started = self._clock()
            self._worker_pool.run(
                config.concurrency,
                task_source,
                self._executor_factory(pool),
                aggregator,
            )
            finished = self._clock()
        finally:
            pool.close()

        result = self._summarise(config, aggregator, finished - started)
        self._log_result(result)
        return result

    def _summarise(
        self, config: StageConfig, aggregator: StatsAggregator, elapsed_s: float
    ) -> StageResult:
        stats = aggregator.snapshot()
        throughput = stats.completed / elapsed_s if elapsed_s > 0 else 0.0
        avg_latency = stats.total_latency_ms / stats.completed if stats.completed else 0.0
        error_rate = stats.errors / config.request_count if config.request_count else 0.0
        latencies = latency_summary(stats.latencies)

        return StageResult(
            concurrency=config.concurrency,
            request_count=config.request_count,
            completed=stats.completed,
            errors=stats.errors,
            connection_errors=stats.connection_errors,
            elapsed_s=max(elapsed_s, 0.0),
            throughput=throughput,
            avg_latency_ms=avg_latency,
            p50_ms=latencies["p50_ms"],
            p95_ms=latencies["p95_ms"],
            p99_ms=latencies["p99_ms"],
            max_latency_ms=latencies["max_ms"],
            error_rate=error_rate,
            critical_failure=self._policy.is_critical(stats.connection_errors, error_rate),
            error_breakdown=dict(stats.error_categories),
        )

    def _log_result(self, result: StageResult) -> None:
        LOGGER.info(
            "Stage completed: concurrency=%d throughput=%.2f ops/sec avg_latency=%.2f ms "
            "p95=%.2f ms errors=%d (%.1f%%)",
            result.concurrency,
            result.throughput,
            result.avg_latency_ms,
            result.p95_ms,
            result.errors,
            result.error_rate * 100,
        )
        if result.connection_errors:
            LOGGER.warning(
                "%d connection errors detected at concurrency %d (DB limit hit?)",
                result.connection_errors,
                result.concurrency,
            )
