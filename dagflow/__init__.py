"""dagflow: workflow DAG execution engine with retries, triggers and persistence."""

__version__ = "1.0.0"

from .engine import StepGraph, WorkflowEngine, WorkflowRun, WorkflowStatus  # noqa: E402

__all__ = ["__version__", "StepGraph", "WorkflowEngine", "WorkflowRun", "WorkflowStatus"]
