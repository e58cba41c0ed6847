"""Command line interface for dagflow.

Validates, plans and runs workflow definition files, and inspects persisted
runs.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from . import __version__
from .config import EngineConfig, get_engine_config
from .engine.core import WorkflowEngine
from .engine.errors import WorkflowError
from .engine.executors import DryRunDispatcher
from .engine.graph import StepGraph
from .engine.state import WorkflowRun, WorkflowStatus
from .loader import load_definition
from .state_manager import RunRepository, SQLiteRunRepository, create_repository
from .ui.console import ConsoleManager
from .utils.logging_factory import LoggingFactory

logger = logging.getLogger("dagflow")


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="dagflow",
        description="Workflow DAG execution engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  # Check a definition
  dagflow validate pipeline.yaml

  # Show execution levels
  dagflow plan pipeline.yaml

  # Dry-run a workflow with inputs, persisting the run
  dagflow run pipeline.yaml --var region=eu --var limit=10 --db runs.db

  # Inspect persisted runs
  dagflow runs --db runs.db
  dagflow show <run-id> --db runs.db
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json-output",
        action="store_true",
        help="Emit machine-readable JSON lines on stdout",
    )
    parser.add_argument("--log-dir", help="Also write logs to <log-dir>/dagflow.log")

    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate a workflow definition")
    validate_parser.add_argument("file", help="Workflow definition (.yaml, .yml or .json)")

    plan_parser = subparsers.add_parser("plan", help="Print the execution levels of a workflow")
    plan_parser.add_argument("file", help="Workflow definition (.yaml, .yml or .json)")

    run_parser = subparsers.add_parser(
        "run",
        help="Execute a workflow with the dry-run dispatcher",
        description="Execute a workflow; each step is simulated from its config block",
    )
    run_parser.add_argument("file", help="Workflow definition (.yaml, .yml or .json)")
    run_parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Input variable (repeatable); values are parsed as YAML scalars",
    )
    run_parser.add_argument("--db", help="SQLite database for run persistence")
    run_parser.add_argument("--timeout", type=float, help="Seconds to wait for the run")

    runs_parser = subparsers.add_parser("runs", help="List persisted runs")
    runs_parser.add_argument("--db", help="SQLite database for run persistence")

    show_parser = subparsers.add_parser("show", help="Show a persisted run")
    show_parser.add_argument("run_id", help="Run ID")
    show_parser.add_argument("--db", help="SQLite database for run persistence")

    return parser


def parse_vars(pairs: List[str]) -> Dict[str, Any]:
    """Parse ``NAME=VALUE`` pairs into input variables.

    Raises:
        ValueError: If a pair has no ``=``
    """
    inputs: Dict[str, Any] = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise ValueError(f"Invalid --var {pair!r}, expected NAME=VALUE")
        inputs[name.strip()] = yaml.safe_load(raw) if raw else ""
    return inputs


def _repository(db: Optional[str], config: EngineConfig) -> RunRepository:
    if db:
        return SQLiteRunRepository(Path(db))
    return create_repository(config)


def validate_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    try:
        graph = load_definition(args.file)
    except WorkflowError as e:
        console.print_error(str(e))
        return 1
    console.print_message(
        f"{graph.name} ({graph.id}) is valid: {len(graph.steps)} steps, "
        f"{len(graph.execution_levels())} levels",
        style="green",
    )
    return 0


def plan_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    try:
        graph = load_definition(args.file)
    except WorkflowError as e:
        console.print_error(str(e))
        return 1
    console.print_plan(graph)
    return 0


async def _execute(
    graph: StepGraph,
    inputs: Dict[str, Any],
    repository: RunRepository,
    config: EngineConfig,
    console: ConsoleManager,
    timeout: Optional[float],
) -> WorkflowRun:
    engine = WorkflowEngine(
        DryRunDispatcher(),
        repository=repository,
        config=config,
        enable_metrics=config.enable_metrics,
    )
    engine.event_bus.subscribe(console.print_event)
    engine.register_graph(graph)
    try:
        return await engine.execute(graph.id, inputs, timeout=timeout)
    finally:
        await engine.shutdown()


def run_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    config = get_engine_config()
    try:
        config.validate()
        graph = load_definition(args.file, config)
        inputs = parse_vars(args.var)
        repository = _repository(args.db, config)
        run = asyncio.run(_execute(graph, inputs, repository, config, console, args.timeout))
    except (WorkflowError, ValueError) as e:
        console.print_error(str(e))
        return 1
    except asyncio.TimeoutError:
        console.print_error(f"Run did not finish within {args.timeout}s")
        return 1

    console.print_run(run)
    return 0 if run.status is WorkflowStatus.COMPLETED else 1


def runs_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    repository = _repository(args.db, get_engine_config())
    console.print_runs(repository.list_runs())
    return 0


def show_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    repository = _repository(args.db, get_engine_config())
    snapshot = repository.load_snapshot(args.run_id)
    if snapshot is None:
        console.print_error(f"Run {args.run_id} not found")
        return 1
    graph = repository.load_graph(snapshot["graph_id"])
    if graph is None:
        console.print_error(f"Workflow {snapshot['graph_id']} of run {args.run_id} not found")
        return 1
    console.print_run(WorkflowRun.from_snapshot(snapshot, graph))
    return 0


COMMANDS = {
    "validate": validate_command,
    "plan": plan_command,
    "run": run_command,
    "runs": runs_command,
    "show": show_command,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.log_dir:
        LoggingFactory.initialize(log_dir=Path(args.log_dir), console=False)
    LoggingFactory.configure_verbose(args.verbose)

    console = ConsoleManager(verbose=args.verbose, json_output=args.json_output)
    console.setup_logging(logger)

    try:
        return COMMANDS[args.command](args, console)
    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
