from __future__ import annotations

import argparse
import logging
import os
import sys
from functools import partial
from pathlib import Path

from dotenv import load_dotenv

from ..store import SchemaError, StagePool, ensure_schema
from .charts import render_report_chart
from .config import (
    DEFAULT_CONCURRENCY_STEP,
    DEFAULT_INITIAL_CONCURRENCY,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_SETTLE_SECONDS,
    DEFAULT_STAGE_REQUESTS,
    RampConfig,
    add_common_arguments,
    failure_policy_from_args,
    pool_settings_from_args,
)
from .controller import ProgressiveController, RunOutcome, RunReport
from .load import WorkerPool
from .stage import StageRunner

LOGGER = logging.getLogger("pgstress.engine")

RULE = "=" * 59
THIN_RULE = "-" * 59


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Progressive PostgreSQL stress test")
    add_common_arguments(parser)
    parser.add_argument(
        "--initial-concurrency",
        type=int,
        default=int(os.environ.get("STRESS_INITIAL_CONCURRENCY", str(DEFAULT_INITIAL_CONCURRENCY))),
    )
    parser.add_argument(
        "--step",
        type=int,
        default=int(os.environ.get("STRESS_CONCURRENCY_STEP", str(DEFAULT_CONCURRENCY_STEP))),
        help="Concurrency increase between stages",
    )
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=int(os.environ.get("STRESS_MAX_CONCURRENCY", str(DEFAULT_MAX_CONCURRENCY))),
        help="Concurrency ceiling; the ramp stops after the stage at this level",
    )
    parser.add_argument(
        "--requests",
        type=int,
        default=int(os.environ.get("STRESS_STAGE_REQUESTS", str(DEFAULT_STAGE_REQUESTS))),
        help="Requests per stage",
    )
    parser.add_argument(
        "--settle-seconds",
        type=float,
        default=float(os.environ.get("STRESS_SETTLE_SECONDS", str(DEFAULT_SETTLE_SECONDS))),
        help="Pause between stages",
    )
    parser.add_argument(
        "--progress-every",
        type=int,
        default=int(os.environ.get("STRESS_PROGRESS_EVERY", "0")),
        help="Log progress every N finished requests (0 disables)",
    )
    args = parser.parse_args(argv)
    if not args.database_url:
        parser.error("DATABASE_URL is not defined (use --database-url or the environment)")
    try:
        args.ramp = RampConfig(
            initial_concurrency=args.initial_concurrency,
            step=args.step,
            max_concurrency=args.max_concurrency,
            requests_per_stage=args.requests,
            settle_seconds=args.settle_seconds,
        )
        args.pool_settings = pool_settings_from_args(args)
        args.policy = failure_policy_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    return args


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def provision_schema(args: argparse.Namespace) -> None:
    if args.skip_setup:
        LOGGER.info("Skipping table setup")
        return
    ensure_schema(args.pool_settings, reset=not args.keep_table)


def write_artifacts(report: RunReport, output_dir: str | None, prefix: str, chart: bool = True) -> None:
    if not output_dir:
        return
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    csv_path = directory / f"{prefix}_report.csv"
    report.to_dataframe().to_csv(csv_path, index=False)
    LOGGER.info("Saved %d stage result(s) to %s", len(report.stages), csv_path)
    if chart:
        render_report_chart(report, directory / f"{prefix}_report.png")


def print_report(report: RunReport) -> None:
    print()
    print(RULE)
    print("           FINAL REPORT")
    print(RULE)
    print("Concurrency | TPS      | Latency (ms) | p95 (ms)  | Error Rate")
    print(THIN_RULE)
    for stage in report.stages:
        print(
            f"{stage.concurrency:<12}| {stage.throughput:<9.0f}| {stage.avg_latency_ms:<13.2f}"
            f"| {stage.p95_ms:<10.2f}| {stage.error_rate * 100:.1f}%"
        )
    print(RULE)
    if report.outcome is RunOutcome.STOPPED_ON_FAILURE:
        stable = report.stable_concurrency
        print(f"Critical failure at concurrency {report.failed_concurrency}.")
        print(
            "Stable concurrency limit seems to be around "
            f"{stable if stable is not None else '<none, first stage failed>'}"
        )
    elif report.outcome is RunOutcome.STOPPED_AT_CEILING:
        print(f"Reached concurrency ceiling {report.stable_concurrency} without critical failure.")


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    setup_logging(args.log_level)

    ramp: RampConfig = args.ramp
    LOGGER.info("Target DB: %s", args.pool_settings.host)
    LOGGER.info(
        "Ramp up: %d -> %d (step %d), %d requests per stage",
        ramp.initial_concurrency,
        ramp.max_concurrency,
        ramp.step,
        ramp.requests_per_stage,
    )

    try:
        provision_schema(args)
    except SchemaError:
        LOGGER.exception("Setup failed; aborting before the first stage")
        return 1

    runner = StageRunner(
        pool_factory=partial(StagePool, args.pool_settings),
        policy=args.policy,
        worker_pool=WorkerPool(progress_every=args.progress_every),
    )
    controller = ProgressiveController.from_config(runner, ramp)
    try:
        report = controller.run_config(ramp)
    except KeyboardInterrupt:
        print("stopping stress test", file=sys.stderr)
        return 130

    print_report(report)
    write_artifacts(report, args.output_dir, prefix="ramp")
    return 0


if __name__ == "__main__":
    sys.exit(main())
