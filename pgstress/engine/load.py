from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from .. import store
from ..payload import generate_record
from .collector import ActionOutcome, Failure, StatsAggregator, Success

LOGGER = logging.getLogger("pgstress.engine.load")

EXHAUSTED = None


class TaskSource:
    """Hands out the indices ``0 .. bound-1`` exactly once across all workers."""

    def __init__(self, bound: int) -> None:
        if bound < 0:
            raise ValueError("bound must be >= 0")
        self._bound = bound
        self._issued = 0
        self._lock = threading.Lock()

    @property
    def bound(self) -> int:
        return self._bound

    @property
    def issued(self) -> int:
        with self._lock:
            return self._issued

    def next_index(self) -> int | None:
        with self._lock:
            if self._issued >= self._bound:
                return EXHAUSTED
            index = self._issued
            self._issued += 1
            return index


class ActionExecutor:
    """One unit of work: acquire a connection, write a row, read it back, release."""

    def __init__(
        self,
        pool,
        record_factory: Callable[[str], dict[str, Any]] = generate_record,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._pool = pool
        self._record_factory = record_factory
        self._clock = clock

    def execute(self, task_id: str) -> ActionOutcome:
        started = self._clock()
        conn = None
        discard = False
        try:
            conn = self._pool.acquire()
            record = self._record_factory(task_id)
            store.write_record(conn, record)
            store.read_record(conn, task_id)
            return Success(duration_ms=self._elapsed_ms(started))
        except Exception as exc:  # noqa: BLE001
            category = store.classify_error(exc)
            discard = category.is_connection_error
            return Failure(
                category=category,
                message=str(exc).strip() or type(exc).__name__,
                duration_ms=self._elapsed_ms(started),
            )
        finally:
            if conn is not None:
                self._pool.release(conn, discard=discard)

    def _elapsed_ms(self, started: float) -> float:
        return max(self._clock() - started, 0.0) * 1000.0


def make_task_id(concurrency: int, index: int) -> str:
    return f"user_{concurrency}_{index}_{time.time_ns() // 1_000_000}"


class _ProgressTracker:
    """Stage-wide tally of finished tasks, logged every ``every`` outcomes."""

    def __init__(self, total: int, every: int, clock: Callable[[], float]) -> None:
        self._total = total
        self._every = every
        self._clock = clock
        self._started = clock()
        self._done = 0
        self._errors = 0
        self._lock = threading.Lock()

    def record(self, outcome: ActionOutcome) -> None:
        with self._lock:
            self._done += 1
            if isinstance(outcome, Failure):
                self._errors += 1
            if self._done % self._every:
                return
            done, errors = self._done, self._errors
            elapsed = self._clock() - self._started
        rate = done / elapsed if elapsed > 0 else 0.0
        LOGGER.info("Progress: %d/%d (%.2f ops/sec) | Errors: %d", done, self._total, rate, errors)


class WorkerPool:
    """Closed-loop worker threads that drain a :class:`TaskSource`."""

    def __init__(
        self,
        task_id_factory: Callable[[int, int], str] = make_task_id,
        progress_every: int = 0,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._task_id_factory = task_id_factory
        self._progress_every = progress_every
        self._clock = clock

    def run(
        self,
        concurrency: int,
        task_source: TaskSource,
        executor: ActionExecutor,
        aggregator: StatsAggregator,
    ) -> None:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")

        progress = None
        if self._progress_every > 0:
            progress = _ProgressTracker(task_source.bound, self._progress_every, self._clock)

        def worker() -> None:
            buffer = aggregator.local_buffer()
            try:
                while True:
                    index = task_source.next_index()
                    if index is EXHAUSTED:
                        return
                    outcome = self._run_task(executor, concurrency, index)
                    buffer.record(outcome)
                    if progress is not None:
                        progress.record(outcome)
            finally:
                aggregator.merge(buffer)

        threads = [
            threading.Thread(target=worker, name=f"stress-worker-{concurrency}-{idx}", daemon=True)
            for idx in range(concurrency)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def _run_task(self, executor: ActionExecutor, concurrency: int, index: int) -> ActionOutcome:
        try:
            task_id = self._task_id_factory(concurrency, index)
            return executor.execute(task_id)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("task %d failed outside the executor", index)
            return Failure(
                category=store.FailureCategory.OTHER,
                message=str(exc).strip() or type(exc).__name__,
            )
