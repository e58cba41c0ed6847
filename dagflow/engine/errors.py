"""Exception hierarchy for the workflow engine.

None of these derive from ``ValueError``: pydantic only wraps ``ValueError``
and ``AssertionError`` raised inside validators, so graph construction errors
reach the caller with their own type and attributes intact.
"""
from __future__ import annotations

from typing import Any, List, Optional, Sequence


class WorkflowError(Exception):
    """Base class for all engine errors."""


class InvalidTransition(WorkflowError):
    """Raised when a state-machine move is not legal from the current status.

    Attributes:
        entity: ``"step"`` or ``"workflow"``
        entity_id: Step id or run id
        current: Current status value
        target: Requested status value (or action name)
    """

    def __init__(
        self,
        entity: str,
        entity_id: str,
        current: str,
        target: str,
        reason: Optional[str] = None,
    ) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        self.reason = reason
        message = f"Illegal {entity} transition for {entity_id}: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class GraphValidationError(WorkflowError):
    """Raised when a step graph definition is structurally invalid."""


class GraphCycle(GraphValidationError):
    """Raised when the dependency edges of a graph contain a cycle.

    Attributes:
        cycle: Step ids along the detected cycle, first id repeated at the end
    """

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle: List[str] = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class GuardSyntaxError(GraphValidationError):
    """Raised when a guard expression uses syntax outside the guard language."""

    def __init__(self, expression: str, detail: str) -> None:
        self.expression = expression
        self.detail = detail
        super().__init__(f"Invalid guard expression {expression!r}: {detail}")


class UnknownIdentifier(GraphValidationError):
    """Raised when an expression or assignment names an undeclared variable."""

    def __init__(self, name: str, where: str = "") -> None:
        self.name = name
        self.where = where
        suffix = f" in {where}" if where else ""
        super().__init__(f"Unknown variable '{name}'{suffix}")


class GuardEvaluationError(WorkflowError):
    """Raised when a guard cannot be evaluated against the current variables."""

    def __init__(self, expression: str, detail: str) -> None:
        self.expression = expression
        self.detail = detail
        super().__init__(f"Guard {expression!r} failed to evaluate: {detail}")


class VariableTypeError(WorkflowError):
    """Raised when a variable value does not match its declared type."""

    def __init__(self, name: str, expected: str, value: Any) -> None:
        self.name = name
        self.expected = expected
        self.value = value
        super().__init__(
            f"Variable '{name}' expects {expected}, got {type(value).__name__}"
        )


class OutputAlreadySet(WorkflowError):
    """Raised when a write-once output key is written a second time."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Output '{key}' has already been set")


class StepExecutionError(WorkflowError):
    """Raised (or wrapped) when the dispatcher reports a step failure.

    Attributes:
        step_id: Failing step
        attempt: Attempt number that failed (1-based)
        cause: Underlying exception, if any
    """

    def __init__(
        self,
        step_id: str,
        message: str,
        attempt: int = 0,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.step_id = step_id
        self.attempt = attempt
        self.cause = cause
        super().__init__(message)


class DeadlineExceeded(StepExecutionError):
    """Raised when a step or a whole run exceeds its timeout."""

    def __init__(
        self,
        step_id: Optional[str],
        timeout: float,
        attempt: int = 0,
    ) -> None:
        self.timeout = timeout
        target = f"Step {step_id}" if step_id else "Run"
        super().__init__(
            step_id or "",
            f"{target} exceeded its deadline of {timeout:.2f}s",
            attempt=attempt,
        )


class RetryExhausted(WorkflowError):
    """Raised when a step has failed on every permitted attempt.

    Attributes:
        step_id: Failing step
        attempts: Number of attempts made
        last_error: Message of the final failure
    """

    def __init__(self, step_id: str, attempts: int, last_error: str) -> None:
        self.step_id = step_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Step {step_id} failed after {attempts} attempt(s). Last error: {last_error}"
        )


class RunNotFound(WorkflowError):
    """Raised when a run id is not known to the engine or repository."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


class GraphNotFound(WorkflowError):
    """Raised when a graph id has not been registered."""

    def __init__(self, graph_id: str) -> None:
        self.graph_id = graph_id
        super().__init__(f"Workflow graph {graph_id} not found")


class TriggerError(WorkflowError):
    """Raised for invalid trigger configuration or firing requests."""
