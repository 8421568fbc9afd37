"""
cli.py - Command line entry point.

Usage:
    stepflow run pipelines/deck.yaml --task "Build the deck" --input output_dir=/tmp/out
    stepflow run pipelines/deck.yaml --task-file task.md --scenario pdf --json
    stepflow serve --port 5000
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from stepflow.config.pipeline_loader import load_pipeline
from stepflow.config.runtime_config import load_runtime_settings
from stepflow.runtime.errors import PipelineValidationError
from stepflow.runtime.scheduler import PipelineRunner
from stepflow.runtime.types import Run, RunStatus

logger = logging.getLogger(__name__)


def parse_inputs(pairs: Sequence[str]) -> Dict[str, str]:
    """Parse repeated ``key=value`` arguments.

    Raises:
        ValueError: If a pair has no ``=`` or an empty key.
    """
    inputs: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid --input '{pair}': expected key=value")
        inputs[key.strip()] = value
    return inputs


def _print_run(run: Run) -> None:
    print(f"Run: {run.id}")
    print(f"  Pipeline: {run.pipeline_id}")
    print(f"  Status: {run.status.value}")
    for step_run in run.steps:
        outcome = step_run.workflow_outcome.value if step_run.workflow_outcome else "-"
        print(f"  - {step_run.step_id}: {step_run.status.value} ({outcome}, attempts={step_run.attempts})")
    print("\nLog:")
    for line in run.logs:
        print(f"  {line}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepflow",
        description="Run LLM step pipelines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=Path, default=None, help="Runtime YAML config path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run a pipeline to completion")
    run_parser.add_argument("pipeline", type=Path, help="Pipeline YAML file")
    task_group = run_parser.add_mutually_exclusive_group(required=True)
    task_group.add_argument("--task", help="Task text")
    task_group.add_argument("--task-file", type=Path, help="File holding the task text")
    run_parser.add_argument(
        "--input",
        action="append",
        dest="inputs",
        default=[],
        metavar="KEY=VALUE",
        help="Run input (can be repeated)",
    )
    run_parser.add_argument("--scenario", default=None, help="Only schedule steps tagged for this scenario")
    run_parser.add_argument("--json", action="store_true", help="Print the final run state as JSON")

    serve_parser = subparsers.add_parser("serve", help="Serve the REST API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=5000, help="Port to bind to")

    return parser


def _run_command(args: argparse.Namespace) -> int:
    try:
        inputs = parse_inputs(args.inputs)
        pipeline = load_pipeline(args.pipeline)
        task = args.task if args.task is not None else args.task_file.read_text(encoding="utf-8")
    except (ValueError, PipelineValidationError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    runner = PipelineRunner(load_runtime_settings(args.config))
    try:
        run = runner.start_run(pipeline, task, inputs=inputs, scenario=args.scenario)
    except KeyboardInterrupt:
        logger.warning("Interrupted; stopping runs")
        return 130
    finally:
        runner.shutdown()

    if args.json:
        print(json.dumps(run.to_dict(), indent=2))
    else:
        _print_run(run)
    return 0 if run.status == RunStatus.COMPLETED else 1


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point. Returns the process exit code."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if args.command == "run":
        return _run_command(args)
    if args.command == "serve":
        from stepflow.api.server import main as serve

        serve(host=args.host, port=args.port)
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
