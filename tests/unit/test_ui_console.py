"""Tests for console UI components."""

import io
import json
import logging

import pytest
from rich.console import Console
from rich.logging import RichHandler

from dagflow.engine.events import Event, EventType, Severity
from dagflow.engine.state import RunFailure, StepStatus, WorkflowRun, WorkflowStatus
from dagflow.ui.console import ConsoleManager, ThreadSafeConsole


@pytest.fixture
def buffer():
    return io.StringIO()


@pytest.fixture
def rich_manager(buffer):
    return ConsoleManager(console=Console(file=buffer, width=160, color_system=None))


@pytest.fixture
def json_manager():
    return ConsoleManager(json_output=True)


def _json_lines(capsys):
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]


@pytest.fixture
def failed_run(diamond_graph):
    run = WorkflowRun.for_graph(diamond_graph)
    run.status = WorkflowStatus.FAILED
    run.step_states["S1"].status = StepStatus.FAILED
    run.step_states["S1"].attempts = 2
    run.step_states["S1"].error = "disk full"
    run.error = RunFailure("S1", 2, "disk full")
    return run


class TestRichOutput:
    """Rendering through a Rich console."""

    def test_print_message(self, rich_manager, buffer):
        rich_manager.print_message("hello", style="green")
        assert "hello" in buffer.getvalue()

    def test_print_error(self, rich_manager, buffer):
        rich_manager.print_error("broken")
        assert "ERROR: broken" in buffer.getvalue()

    def test_print_plan(self, rich_manager, buffer, diamond_graph):
        rich_manager.print_plan(diamond_graph)
        output = buffer.getvalue()
        assert "Plan: Test graph" in output
        for step_id in ("S1", "S2", "S3", "S4"):
            assert step_id in output

    def test_print_run(self, rich_manager, buffer, failed_run):
        rich_manager.print_run(failed_run)
        output = buffer.getvalue()
        assert "failed" in output
        assert "Error: disk full" in output
        assert "S4" in output

    def test_print_runs(self, rich_manager, buffer):
        rich_manager.print_runs({"run-1": WorkflowStatus.COMPLETED})
        output = buffer.getvalue()
        assert "run-1" in output
        assert "completed" in output

    def test_events_only_when_verbose(self, buffer):
        quiet = ConsoleManager(console=Console(file=buffer, width=160))
        quiet.print_event(Event(run_id="r", type=EventType.STARTED))
        assert buffer.getvalue() == ""

        verbose = ConsoleManager(verbose=True, console=Console(file=buffer, width=160))
        verbose.print_event(Event(run_id="r", step_id="S1", type=EventType.STEP_STARTED))
        assert "step-started S1" in buffer.getvalue()


class TestJsonOutput:
    """Line-delimited JSON on stdout."""

    def test_no_rich_console(self, json_manager):
        assert json_manager.console is None

    def test_message_and_error(self, json_manager, capsys):
        json_manager.print_message("hi")
        json_manager.print_error("bad")
        records = _json_lines(capsys)
        assert [r["type"] for r in records] == ["message", "error"]
        assert records[1]["message"] == "bad"
        assert "timestamp" in records[0]

    def test_plan(self, json_manager, capsys, diamond_graph):
        json_manager.print_plan(diamond_graph)
        (record,) = _json_lines(capsys)
        assert record["levels"] == [["S1"], ["S2", "S3"], ["S4"]]

    def test_run(self, json_manager, capsys, failed_run):
        json_manager.print_run(failed_run)
        (record,) = _json_lines(capsys)
        assert record["run"]["status"] == "failed"
        assert record["run"]["progress"]["failed"] == 1

    def test_runs(self, json_manager, capsys):
        json_manager.print_runs({"a": WorkflowStatus.RUNNING})
        (record,) = _json_lines(capsys)
        assert record["runs"] == {"a": "running"}

    def test_event(self, json_manager, capsys):
        event = Event(
            run_id="r",
            step_id="S1",
            type=EventType.STEP_FAILED,
            severity=Severity.ERROR,
            data={"error": "line one\nline two"},
        )
        json_manager.print_event(event)
        (record,) = _json_lines(capsys)
        assert record["event"] == "step-failed"
        assert record["severity"] == "error"
        assert record["data"]["error"] == "line one line two"
        assert record["timestamp"] == event.timestamp.isoformat()


class TestSanitization:
    """JSON field sanitization."""

    def test_control_characters_removed(self, json_manager):
        assert json_manager._sanitize_string_field("a\x00b\x1fc") == "abc"

    def test_long_values_truncated(self, json_manager):
        value = json_manager._sanitize_string_field("x" * 500)
        assert len(value) == 200
        assert value.endswith("...")

    def test_depth_limit(self, json_manager):
        nested = {"v": 1}
        for _ in range(12):
            nested = {"n": nested}
        result = json_manager._sanitize_json_value(nested)
        for _ in range(11):
            result = result["n"]
        assert result == "[TRUNCATED: Max depth exceeded]"


class TestSetupLogging:
    """Logger handler installation."""

    def test_rich_handler_added_once(self, rich_manager):
        logger = logging.getLogger("test_dagflow_rich")
        logger.handlers.clear()
        rich_manager.setup_logging(logger)
        rich_manager.setup_logging(logger)
        assert sum(isinstance(h, RichHandler) for h in logger.handlers) == 1
        assert logger.level == logging.INFO
        logger.handlers.clear()

    def test_json_mode_uses_stream_handler(self):
        manager = ConsoleManager(json_output=True, verbose=True)
        logger = logging.getLogger("test_dagflow_json")
        logger.handlers.clear()
        manager.setup_logging(logger)
        manager.setup_logging(logger)
        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG
        logger.handlers.clear()


class TestThreadSafeConsole:
    """Lock-wrapped console."""

    def test_print_and_log(self, buffer):
        console = ThreadSafeConsole(Console(file=buffer, width=80))
        console.print("printed")
        console.log("logged")
        assert "printed" in buffer.getvalue()
        assert "logged" in buffer.getvalue()
