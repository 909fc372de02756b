"""Command-line entry point: one subcommand per ingestion job."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ingest.core.config import Settings, get_settings
from ingest.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from ingest.jobs.executor import JobContext, execute_job
from ingest.services.repository import get_repository
from ingest.services.snapshots import build_snapshot_writer
from ingest.sources.registry import load_registry

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ingest", description="Content ingestion pipeline jobs.")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("list-sources", help="List registered source modules")

    run = commands.add_parser("run-source", help="Run one ingestion pass for a source")
    run.add_argument("source_key")
    run.add_argument("--respect-cadence", action="store_true", help="Skip the run when the cadence is not due")
    run.add_argument("--force", action="store_true", help="Run paused or retired sources")
    run.add_argument("--quality-threshold", type=float)

    health = commands.add_parser("source-health", help="Summarize source health signals")
    health.add_argument("--source-key")

    alerts = commands.add_parser("incident-alerts", help="Evaluate and record incident alerts")
    alerts.add_argument("--source-key")

    reconcile = commands.add_parser("reconcile-promotions", help="Repair promotion bookkeeping drift")
    reconcile.add_argument("--spike-threshold", type=int)

    replay = commands.add_parser("replay-run", help="Re-run a finished run and check determinism")
    replay.add_argument("run_id")
    replay.add_argument("--config-version")
    replay.add_argument("--no-force", dest="force", action="store_false")
    replay.add_argument("--quality-threshold", type=float)
    replay.add_argument(
        "--tolerance",
        type=json.loads,
        help='JSON object of tolerance overrides, e.g. \'{"min_candidate_key_overlap_ratio": 0.8}\'',
    )

    probe = commands.add_parser("source-probe", help="Probe a prospective source and recommend strategies")
    probe.add_argument("url")
    probe.add_argument("--source-key")
    probe.add_argument("--display-name")
    probe.add_argument("--max-probe-pages", type=int)
    return parser


def job_inputs(args: argparse.Namespace) -> tuple[str, dict[str, Any]]:
    kind = args.command.replace("-", "_")
    inputs = {key: value for key, value in vars(args).items() if key != "command" and value is not None}
    return kind, inputs


def build_job_context(settings: Settings) -> JobContext:
    return JobContext(
        store=get_repository(),
        registry=load_registry(settings.source_modules),
        snapshot_writer=build_snapshot_writer(settings),
        settings=settings,
    )


async def run_command(args: argparse.Namespace) -> dict[str, Any]:
    settings = get_settings()
    context = build_job_context(settings)
    kind, inputs = job_inputs(args)
    try:
        return await execute_job(kind, inputs, context=context)
    finally:
        await context.store.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    telemetry_runtime = setup_telemetry(settings)
    try:
        outcome = asyncio.run(run_command(args))
    except Exception as exc:
        logger.exception("command failed command=%s", args.command)
        print(str(exc), file=sys.stderr)
        return 1
    finally:
        shutdown_telemetry(telemetry_runtime)

    print(json.dumps(outcome["result"], indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
