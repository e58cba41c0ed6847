"""Console output for the dagflow CLI.

Renders graphs, runs and events with Rich when attached to a terminal, or
as one JSON object per line when ``json_output`` is requested.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from ..engine.events import Event
    from ..engine.graph import StepGraph
    from ..engine.state import WorkflowRun

STATUS_STYLES = {
    "completed": "green",
    "running": "blue",
    "retrying": "yellow",
    "pending": "white",
    "skipped": "dim",
    "failed": "red",
    "cancelled": "magenta",
    "timeout": "red",
    "paused": "yellow",
}


class ThreadSafeConsole:
    """Lock-protected wrapper around a Rich Console."""

    def __init__(self, console: Console):
        self._console = console
        self._lock = threading.RLock()

    def print(self, *args, **kwargs):
        with self._lock:
            self._console.print(*args, **kwargs)

    def log(self, *args, **kwargs):
        with self._lock:
            self._console.log(*args, **kwargs)


class ConsoleManager:
    """Manages CLI output with Rich integration."""

    def __init__(
        self,
        verbose: bool = False,
        json_output: bool = False,
        console: Optional[Console] = None,
    ):
        self.verbose = verbose
        self.json_output = json_output
        self._json_max_field_length = 200
        self.is_tty = sys.stdout.isatty()

        if self.json_output:
            self.console = None
        else:
            self.console = ThreadSafeConsole(console or Console())

    def setup_logging(self, logger: logging.Logger) -> None:
        """Attach a Rich (or plain JSON-friendly) handler to ``logger``."""

        def _has_handler_of_type(h_type):
            return any(isinstance(h, h_type) for h in logger.handlers)

        if self.json_output:
            if not _has_handler_of_type(logging.StreamHandler):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(logging.Formatter("%(message)s"))
                logger.addHandler(handler)
        elif not _has_handler_of_type(RichHandler):
            logger.addHandler(
                RichHandler(
                    console=Console(stderr=True),
                    show_time=True,
                    show_path=self.verbose,
                    rich_tracebacks=True,
                )
            )
        logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    def print_message(self, message: str, style: str = "white") -> None:
        if self.json_output:
            self._emit({"type": "message", "message": message})
        elif self.console:
            self.console.print(f"[{style}]{message}[/{style}]")

    def print_error(self, message: str) -> None:
        if self.json_output:
            self._emit({"type": "error", "message": message})
        elif self.console:
            self.console.print(f"[red]ERROR: {message}[/red]")

    def print_plan(self, graph: "StepGraph") -> None:
        """Print the execution levels of a graph."""
        levels = graph.execution_levels()
        if self.json_output:
            self._emit({"type": "plan", "graph_id": graph.id, "levels": levels})
            return

        table = Table(title=f"Plan: {graph.name} (v{graph.version})")
        table.add_column("Level", style="cyan", justify="right")
        table.add_column("Step", style="bold")
        table.add_column("Kind")
        table.add_column("Priority", justify="right")
        table.add_column("Weight", justify="right")
        table.add_column("Guard", style="dim")
        for index, level in enumerate(levels):
            for step_id in level:
                step = graph.step(step_id)
                table.add_row(
                    str(index),
                    step.id,
                    step.kind.value,
                    str(step.resources.priority),
                    str(step.resources.weight),
                    step.guard or "",
                )
        self.console.print(table)

    def print_run(self, run: "WorkflowRun") -> None:
        """Print a run's status, progress and per-step table."""
        if self.json_output:
            self._emit({"type": "run", "run": self._sanitize_json_value(run.summary())})
            return

        style = STATUS_STYLES.get(run.status.value, "white")
        progress = run.current_progress()
        header = (
            f"[bold]{run.graph_id}[/bold] run {run.run_id}\n"
            f"Status: [{style}]{run.status.value}[/{style}]  "
            f"Progress: {progress.percent:.1f}% "
            f"({progress.completed} completed, {progress.failed} failed, "
            f"{progress.skipped} skipped of {progress.total})"
        )
        if run.error is not None:
            header += f"\nError: {run.error.last_error}"
        self.console.print(Panel(header, style=style, padding=(0, 1)))

        table = Table(title="Steps")
        table.add_column("Step", style="cyan")
        table.add_column("Status", style="bold")
        table.add_column("Attempts", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Detail")
        for step_id, state in run.step_states.items():
            status_style = STATUS_STYLES.get(state.status.value, "white")
            duration = state.duration
            table.add_row(
                step_id,
                f"[{status_style}]{state.status.value}[/{status_style}]",
                str(state.attempts),
                f"{duration:.2f}s" if duration is not None else "-",
                state.error or state.skip_reason or "",
            )
        self.console.print(table)

    def print_runs(self, runs: Mapping[str, Any]) -> None:
        if self.json_output:
            self._emit({"type": "runs", "runs": {k: getattr(v, "value", v) for k, v in runs.items()}})
            return
        table = Table(title="Runs")
        table.add_column("Run", style="cyan")
        table.add_column("Status", style="bold")
        for run_id, status in runs.items():
            value = getattr(status, "value", str(status))
            style = STATUS_STYLES.get(value, "white")
            table.add_row(run_id, f"[{style}]{value}[/{style}]")
        self.console.print(table)

    def print_event(self, event: "Event") -> None:
        """Print one engine event as it happens."""
        if self.json_output:
            self._emit(
                {
                    "type": "event",
                    "event": event.type.value,
                    "run_id": event.run_id,
                    "step_id": event.step_id,
                    "severity": event.severity.value,
                    "data": self._sanitize_json_value(event.data),
                },
                timestamp=event.timestamp.isoformat(),
            )
        elif self.console and self.verbose:
            target = f" {event.step_id}" if event.step_id else ""
            self.console.log(f"{event.type.value}{target}")

    def _emit(self, payload: Dict[str, Any], timestamp: Optional[str] = None) -> None:
        record = {"timestamp": timestamp or datetime.now().isoformat()}
        record.update(payload)
        print(json.dumps(record, default=str))

    def _sanitize_json_value(self, value: Any, depth: int = 0) -> Any:
        if depth > 10:
            return "[TRUNCATED: Max depth exceeded]"
        if isinstance(value, str):
            return self._sanitize_string_field(value)
        if isinstance(value, (bool, int, float)) or value is None:
            return value
        if isinstance(value, dict):
            return {str(k): self._sanitize_json_value(v, depth + 1) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._sanitize_json_value(item, depth + 1) for item in value]
        return self._sanitize_string_field(str(value))

    def _sanitize_string_field(self, value: str) -> str:
        # Control characters would corrupt line-delimited output
        value = re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]", "", value)
        value = re.sub(r"[\r\n]+", " ", value)
        if len(value) > self._json_max_field_length:
            value = value[: self._json_max_field_length - 3] + "..."
        return value
