from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field, fields
from typing import Callable

import pandas as pd

from .config import RampConfig, StageConfig
from .stage import StageResult, StageRunner

LOGGER = logging.getLogger("pgstress.engine.controller")


class RunOutcome(enum.Enum):
    STOPPED_ON_FAILURE = "stopped_on_failure"
    STOPPED_AT_CEILING = "stopped_at_ceiling"


@dataclass
class RunReport:
    """Stage results in execution order plus how the run ended."""

    stages: list[StageResult] = field(default_factory=list)
    outcome: RunOutcome | None = None

    @property
    def concurrencies(self) -> list[int]:
        return [stage.concurrency for stage in self.stages]

    @property
    def failed_concurrency(self) -> int | None:
        if self.outcome is RunOutcome.STOPPED_ON_FAILURE and self.stages:
            return self.stages[-1].concurrency
        return None

    @property
    def stable_concurrency(self) -> int | None:
        """Highest concurrency that finished without a critical failure."""
        if self.outcome is RunOutcome.STOPPED_ON_FAILURE:
            if len(self.stages) < 2:
                return None
            return self.stages[-2].concurrency
        if self.stages:
            return self.stages[-1].concurrency
        return None

    def to_dataframe(self) -> pd.DataFrame:
        rows = [stage.as_row() for stage in self.stages]
        if not rows:
            return pd.DataFrame(
                columns=[f.name for f in fields(StageResult) if f.name != "error_breakdown"]
            )
        df = pd.DataFrame(rows)
        # Categories absent from a stage show up as NaN after the row merge.
        error_columns = [column for column in df.columns if column.startswith("errors_")]
        if error_columns:
            df[error_columns] = df[error_columns].fillna(0).astype(int)
        return df


class ProgressiveController:
    """Ramps concurrency stage by stage until a critical failure or the ceiling."""

    def __init__(
        self,
        runner: StageRunner,
        settle_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._runner = runner
        self._settle_seconds = settle_seconds
        self._sleep = sleep

    @classmethod
    def from_config(
        cls, runner: StageRunner, config: RampConfig, sleep: Callable[[float], None] = time.sleep
    ) -> ProgressiveController:
        return cls(runner, settle_seconds=config.settle_seconds, sleep=sleep)

    def run(
        self,
        initial_concurrency: int,
        step: int,
        ceiling: int,
        requests_per_stage: int,
    ) -> RunReport:
        # Same bounds RampConfig enforces, so direct callers get them too.
        RampConfig(
            initial_concurrency=initial_concurrency,
            step=step,
            max_concurrency=ceiling,
            requests_per_stage=requests_per_stage,
            settle_seconds=self._settle_seconds,
        )

        report = RunReport()
        current = initial_concurrency
        while True:
            result = self._runner.run_stage(StageConfig(current, requests_per_stage))
            report.stages.append(result)

            if result.critical_failure:
                report.outcome = RunOutcome.STOPPED_ON_FAILURE
                LOGGER.warning(
                    "Critical failure at concurrency %d; stable concurrency limit seems to be around %s",
                    current,
                    report.stable_concurrency if report.stable_concurrency is not None else "<none>",
                )
                return report

            if current >= ceiling:
                report.outcome = RunOutcome.STOPPED_AT_CEILING
                LOGGER.info("Reached concurrency ceiling %d without critical failure", ceiling)
                return report

            current = min(current + step, ceiling)
            if self._settle_seconds > 0:
                self._sleep(self._settle_seconds)

    def run_config(self, config: RampConfig) -> RunReport:
        return self.run(
            config.initial_concurrency,
            config.step,
            config.max_concurrency,
            config.requests_per_stage,
        )


class SingleStageController:
    """Fixed-concurrency run: one stage, reported like a one-step ramp."""

    def __init__(self, runner: StageRunner) -> None:
        self._runner = runner

    def run(self, concurrency: int, request_count: int) -> RunReport:
        result = self._runner.run_stage(StageConfig(concurrency, request_count))
        outcome = (
            RunOutcome.STOPPED_ON_FAILURE if result.critical_failure else RunOutcome.STOPPED_AT_CEILING
        )
        return RunReport(stages=[result], outcome=outcome)
