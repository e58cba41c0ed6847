"""
Execution state for workflow runs.

This module holds the mutable side of the engine: per-step state, the
workflow run that owns it, and the JSON-safe snapshot format used to persist
and restore runs. Everything here is written only by the state machine.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .errors import OutputAlreadySet
from .variables import VariableBag

if TYPE_CHECKING:
    from .graph import StepGraph


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepStatus(str, Enum):
    """Individual step execution status."""

    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in STEP_TERMINAL


STEP_TERMINAL = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED}
)

# Dependencies in these states satisfy their dependents.
STEP_SATISFIED = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


class WorkflowStatus(str, Enum):
    """Workflow run status."""

    DRAFT = "draft"
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in WORKFLOW_TERMINAL


WORKFLOW_TERMINAL = frozenset(
    {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.CANCELLED,
        WorkflowStatus.TIMEOUT,
    }
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _json_safe(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


@dataclass
class StepState:
    """Execution state of one step within one run."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    retry_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    actor_id: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def duration(self) -> Optional[float]:
        if not self.started_at or not self.finished_at:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "last_attempt_at": _iso(self.last_attempt_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "retry_at": _iso(self.retry_at),
            "result": _json_safe(self.result),
            "error": self.error,
            "actor_id": self.actor_id,
            "skip_reason": self.skip_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepState":
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data["status"]),
            attempts=data.get("attempts", 0),
            last_attempt_at=_parse_iso(data.get("last_attempt_at")),
            started_at=_parse_iso(data.get("started_at")),
            finished_at=_parse_iso(data.get("finished_at")),
            retry_at=_parse_iso(data.get("retry_at")),
            result=data.get("result"),
            error=data.get("error"),
            actor_id=data.get("actor_id"),
            skip_reason=data.get("skip_reason"),
        )


@dataclass(frozen=True)
class Progress:
    """Aggregate step counts for a run."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    percent: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "percent": self.percent,
        }


@dataclass
class RunFailure:
    """User-visible description of why a run failed."""

    step_id: Optional[str]
    attempts: int
    last_error: str
    internal: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "internal": self.internal,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunFailure":
        return cls(
            step_id=data.get("step_id"),
            attempts=data.get("attempts", 0),
            last_error=data.get("last_error", ""),
            internal=data.get("internal", False),
        )


@dataclass
class WorkflowRun:
    """One execution instance of a step graph."""

    graph_id: str
    variables: VariableBag
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    graph_version: str = "1.0.0"
    status: WorkflowStatus = WorkflowStatus.DRAFT
    step_states: Dict[str, StepState] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)
    active_steps: List[str] = field(default_factory=list)
    waiting_steps: List[str] = field(default_factory=list)
    progress: Progress = field(default_factory=Progress)
    trigger_id: Optional[str] = None
    parent_run_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    deadline_at: Optional[datetime] = None
    error: Optional[RunFailure] = None
    failure_handling: bool = False
    audit_cursor: int = 0
    last_action: Optional[str] = None

    @classmethod
    def for_graph(cls, graph: "StepGraph", **kwargs: Any) -> "WorkflowRun":
        """Create a draft run with one pending state per step."""
        run = cls(
            graph_id=graph.id,
            graph_version=graph.version,
            variables=VariableBag(graph.variables),
            **kwargs,
        )
        run.step_states = {step_id: StepState(step_id) for step_id in graph.step_ids}
        return run

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def get_duration(self) -> Optional[float]:
        if not self.started_at:
            return None
        end = self.finished_at or utcnow()
        return (end - self.started_at).total_seconds()

    def step_state(self, step_id: str) -> StepState:
        return self.step_states[step_id]

    def steps_with_status(self, *statuses: StepStatus) -> List[str]:
        wanted = set(statuses)
        return [sid for sid, st in self.step_states.items() if st.status in wanted]

    def set_output(self, key: str, value: Any) -> None:
        if key in self.outputs:
            raise OutputAlreadySet(key)
        self.outputs[key] = value

    def to_snapshot(self) -> Dict[str, Any]:
        """Serialize the run to a JSON-safe dictionary."""
        return {
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "graph_version": self.graph_version,
            "status": self.status.value,
            "step_states": [st.to_dict() for st in self.step_states.values()],
            "variables": {k: _json_safe(v) for k, v in self.variables.items()},
            "outputs": {k: _json_safe(v) for k, v in self.outputs.items()},
            "active_steps": list(self.active_steps),
            "waiting_steps": list(self.waiting_steps),
            "progress": self.progress.to_dict(),
            "trigger_id": self.trigger_id,
            "parent_run_id": self.parent_run_id,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "deadline_at": _iso(self.deadline_at),
            "error": self.error.to_dict() if self.error else None,
            "failure_handling": self.failure_handling,
            "audit_cursor": self.audit_cursor,
            "last_action": self.last_action,
        }

    @classmethod
    def from_snapshot(cls, data: Dict[str, Any], graph: "StepGraph") -> "WorkflowRun":
        """Rebuild a run from :meth:`to_snapshot` output and its graph."""
        variables = VariableBag(graph.variables)
        variables.update(data.get("variables", {}))
        states = [StepState.from_dict(item) for item in data.get("step_states", [])]
        failure = data.get("error")
        run = cls(
            run_id=data["run_id"],
            graph_id=data["graph_id"],
            graph_version=data.get("graph_version", graph.version),
            variables=variables,
            status=WorkflowStatus(data["status"]),
            step_states={st.step_id: st for st in states},
            outputs=dict(data.get("outputs", {})),
            active_steps=list(data.get("active_steps", [])),
            waiting_steps=list(data.get("waiting_steps", [])),
            trigger_id=data.get("trigger_id"),
            parent_run_id=data.get("parent_run_id"),
            created_at=_parse_iso(data.get("created_at")) or utcnow(),
            started_at=_parse_iso(data.get("started_at")),
            finished_at=_parse_iso(data.get("finished_at")),
            deadline_at=_parse_iso(data.get("deadline_at")),
            error=RunFailure.from_dict(failure) if failure else None,
            failure_handling=data.get("failure_handling", False),
            audit_cursor=data.get("audit_cursor", 0),
            last_action=data.get("last_action"),
        )
        run.progress = run.current_progress()
        return run

    def current_progress(self) -> Progress:
        """Progress recomputed from the step states."""
        # Import here to avoid circular imports
        from .progress import aggregate_progress

        return aggregate_progress(self.step_states.values())

    def summary(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "graph_id": self.graph_id,
            "status": self.status.value,
            "progress": self.current_progress().to_dict(),
            "duration": self.get_duration(),
        }

    def __str__(self) -> str:
        return f"WorkflowRun({self.run_id}): {self.graph_id} [{self.status.value}]"
