from __future__ import annotations

import argparse
import logging
import os
import sys
from functools import partial

from dotenv import load_dotenv

from .engine.config import (
    MAX_SANE_CONCURRENCY,
    StageConfig,
    add_common_arguments,
    failure_policy_from_args,
    pool_settings_from_args,
)
from .engine.controller import RunOutcome, RunReport, SingleStageController
from .engine.load import WorkerPool
from .engine.main import RULE, THIN_RULE, provision_schema, setup_logging, write_artifacts
from .engine.stage import StageRunner
from .store import SchemaError, StagePool

LOGGER = logging.getLogger("pgstress")

DEFAULT_CONCURRENCY = 50
DEFAULT_REQUESTS = 1_000_000


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fixed-concurrency PostgreSQL stress test")
    add_common_arguments(parser)
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("STRESS_CONCURRENCY", str(DEFAULT_CONCURRENCY))),
        help=f"Simultaneous workers and pool size (<= {MAX_SANE_CONCURRENCY})",
    )
    parser.add_argument(
        "--requests",
        type=int,
        default=int(os.environ.get("STRESS_TOTAL_REQUESTS", str(DEFAULT_REQUESTS))),
        help="Total number of requests",
    )
    parser.add_argument(
        "--progress-every",
        type=int,
        default=int(os.environ.get("STRESS_PROGRESS_EVERY", "1000")),
        help="Log progress every N finished requests (0 disables)",
    )
    args = parser.parse_args(argv)
    if not args.database_url:
        parser.error("DATABASE_URL is not defined (use --database-url or the environment)")
    if args.requests <= 0:
        parser.error("requests must be > 0")
    try:
        args.stage = StageConfig(concurrency=args.concurrency, request_count=args.requests)
        args.pool_settings = pool_settings_from_args(args)
        args.policy = failure_policy_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    return args


def print_results(report: RunReport) -> None:
    stage = report.stages[0]
    print()
    print(RULE)
    print("           STRESS TEST RESULTS")
    print(RULE)
    print(f"Total Requests:     {stage.request_count}")
    print(f"Successful:         {stage.completed}")
    print(f"Failed:             {stage.errors}")
    for category, count in sorted(stage.error_breakdown.items()):
        print(f"  {category}: {count}")
    print(f"Total Time:         {stage.elapsed_s:.2f} s")
    print(f"Throughput:         {stage.throughput:.2f} ops/sec")
    print(THIN_RULE)
    print(f"Latency (avg):      {stage.avg_latency_ms:.2f} ms")
    print(f"Latency (p50):      {stage.p50_ms:.2f} ms")
    print(f"Latency (p95):      {stage.p95_ms:.2f} ms")
    print(f"Latency (p99):      {stage.p99_ms:.2f} ms")
    print(f"Latency (max):      {stage.max_latency_ms:.2f} ms")
    print(RULE)
    if report.outcome is RunOutcome.STOPPED_ON_FAILURE:
        print(f"Concurrency {stage.concurrency} exceeded the store's safe operating point.", file=sys.stderr)


def run(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(args.log_level)

    stage: StageConfig = args.stage
    LOGGER.info("Target DB: %s", args.pool_settings.host)
    LOGGER.info("Total requests: %d, concurrency: %d", stage.request_count, stage.concurrency)

    try:
        provision_schema(args)
    except SchemaError:
        LOGGER.exception("Failed to set up the database; aborting")
        return 1

    runner = StageRunner(
        pool_factory=partial(StagePool, args.pool_settings),
        policy=args.policy,
        worker_pool=WorkerPool(progress_every=args.progress_every),
    )
    try:
        report = SingleStageController(runner).run(stage.concurrency, stage.request_count)
    except KeyboardInterrupt:
        print("stopping stress test", file=sys.stderr)
        return 130

    print_results(report)
    write_artifacts(report, args.output_dir, prefix="fixed", chart=False)
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
