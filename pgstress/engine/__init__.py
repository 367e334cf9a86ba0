"""
Load-generation and measurement engine.

Stages are executed by :class:`StageRunner`; :class:`ProgressiveController`
ramps concurrency across stages and :class:`SingleStageController` runs one.
"""

from .controller import ProgressiveController, RunOutcome, RunReport, SingleStageController
from .stage import StageResult, StageRunner

__all__ = [
    "ProgressiveController",
    "RunOutcome",
    "RunReport",
    "SingleStageController",
    "StageResult",
    "StageRunner",
]
