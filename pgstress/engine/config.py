from __future__ import annotations

import argparse
import os
from dataclasses import dataclass

from ..store import PoolSettings

MAX_SANE_CONCURRENCY = 10_000

DEFAULT_INITIAL_CONCURRENCY = 10
DEFAULT_CONCURRENCY_STEP = 10
DEFAULT_MAX_CONCURRENCY = 500
DEFAULT_STAGE_REQUESTS = 2_000
DEFAULT_MAX_ERROR_RATE = 0.05
DEFAULT_MIN_CONNECTION_ERRORS = 1
DEFAULT_SETTLE_SECONDS = 1.0


@dataclass(frozen=True)
class StageConfig:
    """Fixed concurrency level and request count of one stage."""

    concurrency: int
    request_count: int

    def __post_init__(self) -> None:
        if self.concurrency <= 0:
            raise ValueError("concurrency must be > 0")
        if self.concurrency > MAX_SANE_CONCURRENCY:
            raise ValueError(f"concurrency must be <= {MAX_SANE_CONCURRENCY}")
        if self.request_count < 0:
            raise ValueError("request_count must be >= 0")


@dataclass(frozen=True)
class FailurePolicy:
    """Stage verdict thresholds.

    A stage is critical once it sees ``min_connection_errors`` connection-class
    failures, or when its error rate is strictly above ``max_error_rate``.
    """

    max_error_rate: float = DEFAULT_MAX_ERROR_RATE
    min_connection_errors: int = DEFAULT_MIN_CONNECTION_ERRORS

    def __post_init__(self) -> None:
        if not 0.0 <= self.max_error_rate < 1.0:
            raise ValueError("max_error_rate must be within [0, 1)")
        if self.min_connection_errors <= 0:
            raise ValueError("min_connection_errors must be > 0")

    def is_critical(self, connection_errors: int, error_rate: float) -> bool:
        return (
            connection_errors >= self.min_connection_errors
            or error_rate > self.max_error_rate
        )


@dataclass(frozen=True)
class RampConfig:
    initial_concurrency: int = DEFAULT_INITIAL_CONCURRENCY
    step: int = DEFAULT_CONCURRENCY_STEP
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    requests_per_stage: int = DEFAULT_STAGE_REQUESTS
    settle_seconds: float = DEFAULT_SETTLE_SECONDS

    def __post_init__(self) -> None:
        for name in ("initial_concurrency", "step", "max_concurrency", "requests_per_stage"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.max_concurrency > MAX_SANE_CONCURRENCY:
            raise ValueError(f"max_concurrency must be <= {MAX_SANE_CONCURRENCY}")
        if self.initial_concurrency > self.max_concurrency:
            raise ValueError("initial_concurrency must be <= max_concurrency")
        if self.settle_seconds < 0:
            raise ValueError("settle_seconds must be >= 0")


def env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on"}


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    """Connection, verdict, setup and output flags shared by both CLIs."""
    parser.add_argument(
        "--database-url",
        default=os.environ.get("DATABASE_URL"),
        help="PostgreSQL connection string (defaults to $DATABASE_URL)",
    )
    parser.add_argument(
        "--acquire-timeout",
        type=float,
        default=float(os.environ.get("STRESS_ACQUIRE_TIMEOUT_SECONDS", "5.0")),
        help="Seconds to wait for a pooled connection before failing the task",
    )
    parser.add_argument(
        "--connect-timeout",
        type=int,
        default=int(os.environ.get("STRESS_CONNECT_TIMEOUT_SECONDS", "5")),
        help="libpq connect_timeout in seconds",
    )
    parser.add_argument(
        "--statement-timeout",
        type=int,
        default=int(os.environ.get("STRESS_STATEMENT_TIMEOUT_MS", "10000")),
        help="Server-side statement_timeout in milliseconds",
    )
    parser.add_argument(
        "--max-error-rate",
        type=float,
        default=float(os.environ.get("STRESS_MAX_ERROR_RATE", str(DEFAULT_MAX_ERROR_RATE))),
    )
    parser.add_argument(
        "--min-connection-errors",
        type=int,
        default=int(
            os.environ.get("STRESS_MIN_CONNECTION_ERRORS", str(DEFAULT_MIN_CONNECTION_ERRORS))
        ),
        help="Connection/timeout errors that make a stage critical",
    )
    parser.add_argument(
        "--skip-setup",
        action="store_true",
        default=env_flag("STRESS_SKIP_SETUP"),
        help="Do not touch the schema before the run",
    )
    parser.add_argument(
        "--keep-table",
        action="store_true",
        help="Create the table only if missing instead of recreating it",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("STRESS_OUTPUT_DIR"),
        help="Directory for CSV reports and charts",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("STRESS_LOG_LEVEL", "INFO"),
        help="Logging level",
    )


def pool_settings_from_args(args: argparse.Namespace) -> PoolSettings:
    return PoolSettings(
        database_url=args.database_url or "",
        acquire_timeout_s=args.acquire_timeout,
        connect_timeout_s=args.connect_timeout,
        statement_timeout_ms=args.statement_timeout,
    )


def failure_policy_from_args(args: argparse.Namespace) -> FailurePolicy:
    return FailurePolicy(
        max_error_rate=args.max_error_rate,
        min_connection_errors=args.min_connection_errors,
    )
