"""
Workflow graph definition models.

This module defines the immutable description of a workflow: its steps, their
dependency edges, retry policies, resource hints and declared variables. A
``StepGraph`` is validated once, when it is constructed; after that it is only
ever read, so a single instance can be shared by every run of the workflow.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import networkx as nx
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import GraphCycle, GraphValidationError
from .guards import Guard, compile_guard
from .variables import VariableSpec


class StepKind(str, Enum):
    """What a step does when it is dispatched."""

    TASK = "task"
    SUBWORKFLOW = "subworkflow"
    DECISION = "decision"
    PARALLEL = "parallel"
    WAIT = "wait"

    @classmethod
    def _missing_(cls, value):
        if value == "manual":
            return cls.WAIT
        return None


class BackoffKind(str, Enum):
    """Retry delay growth strategies."""

    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


class FailurePolicy(str, Enum):
    """How a run reacts to a step that has exhausted its retries."""

    FAIL_FAST = "fail-fast"
    CONTINUE = "continue"
    RETRY_FAILED = "retry-failed"
    MANUAL = "manual"


class _Model(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
    )


class RetryPolicy(_Model):
    """Per-step retry configuration."""

    max_attempts: int = Field(1, ge=1)
    backoff: BackoffKind = Field(
        BackoffKind.FIXED,
        validation_alias=AliasChoices("backoff", "backoffStrategy", "backoff_strategy"),
    )
    initial_delay_ms: int = Field(1000, gt=0)
    max_delay_ms: Optional[int] = Field(None, gt=0)
    jitter: float = Field(0.0, ge=0.0, le=1.0)

    @model_validator(mode="before")
    @classmethod
    def _percent_jitter(cls, data: Any) -> Any:
        if isinstance(data, dict) and "jitterPercent" in data:
            data = dict(data)
            data["jitter"] = float(data.pop("jitterPercent")) / 100.0
        return data

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.max_delay_ms is not None and self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self


class ResourceHints(_Model):
    """Scheduling hints for a step."""

    weight: int = Field(1, ge=1)
    priority: int = Field(5, ge=0, le=10)
    timeout_seconds: Optional[float] = Field(None, gt=0)


class Step(_Model):
    """One node of a workflow graph."""

    id: str = Field(..., min_length=1)
    name: str = ""
    kind: StepKind = Field(
        StepKind.TASK, validation_alias=AliasChoices("kind", "type")
    )
    depends_on: Tuple[str, ...] = ()
    run_after: Tuple[str, ...] = ()
    guard: Optional[str] = Field(
        None, validation_alias=AliasChoices("guard", "condition")
    )
    retry: Optional[RetryPolicy] = Field(
        None, validation_alias=AliasChoices("retry", "retryPolicy", "retry_policy")
    )
    resources: ResourceHints = Field(default_factory=ResourceHints)
    config: Dict[str, Any] = Field(default_factory=dict)
    actor: Optional[str] = None
    workflow_ref: Optional[str] = Field(
        None, validation_alias=AliasChoices("workflow_ref", "workflowRef", "workflowId")
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        condition = data.get("condition")
        if isinstance(condition, dict):
            data["condition"] = condition.get("expression")
        timeout_ms = data.pop("timeoutMs", None)
        if timeout_ms is not None:
            resources = dict(data.get("resources") or {})
            resources.setdefault("timeoutSeconds", timeout_ms / 1000.0)
            data["resources"] = resources
        if not data.get("name"):
            data["name"] = data.get("id", "")
        return data

    @property
    def priority(self) -> int:
        return self.resources.priority

    @property
    def weight(self) -> int:
        return self.resources.weight

    @property
    def timeout(self) -> Optional[float]:
        return self.resources.timeout_seconds


class StepGraph(_Model):
    """Immutable, validated workflow graph."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    version: str = "1.0.0"
    description: str = ""
    steps: Tuple[Step, ...]
    variables: Dict[str, VariableSpec] = Field(default_factory=dict)
    start_step: Optional[str] = None
    end_steps: Tuple[str, ...] = ()
    max_concurrency: Optional[int] = Field(None, ge=1)
    failure_policy: FailurePolicy = FailurePolicy.FAIL_FAST
    on_failure_step: Optional[str] = None
    timeout_seconds: Optional[float] = Field(None, gt=0)
    labels: Dict[str, str] = Field(default_factory=dict)

    _dag: nx.DiGraph = PrivateAttr(default=None)
    _by_id: Dict[str, Step] = PrivateAttr(default_factory=dict)
    _index: Dict[str, int] = PrivateAttr(default_factory=dict)
    _guards: Dict[str, Guard] = PrivateAttr(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        error_handling = data.pop("errorHandling", None)
        if isinstance(error_handling, dict):
            data.setdefault("failurePolicy", error_handling.get("strategy", "fail-fast"))
            on_failure = error_handling.get("onFailure") or {}
            if on_failure.get("stepId"):
                data.setdefault("onFailureStep", on_failure["stepId"])
        return data

    @model_validator(mode="after")
    def _validate_graph(self) -> "StepGraph":
        if not self.steps:
            raise GraphValidationError("Workflow must have at least one step")

        by_id: Dict[str, Step] = {}
        for step in self.steps:
            if step.id in by_id:
                raise GraphValidationError(f"Duplicate step ID: {step.id}")
            by_id[step.id] = step

        def _require(step_id: str, where: str) -> None:
            if step_id not in by_id:
                raise GraphValidationError(f"Unknown step '{step_id}' referenced by {where}")

        dag = nx.DiGraph()
        for step in self.steps:
            dag.add_node(step.id)
        for step in self.steps:
            for dep in step.depends_on:
                _require(dep, f"{step.id}.depends_on")
                if dep == step.id:
                    raise GraphValidationError(f"Step {step.id} depends on itself")
                dag.add_edge(dep, step.id)
            for dep in step.run_after:
                _require(dep, f"{step.id}.run_after")
            if step.kind is StepKind.SUBWORKFLOW and not step.workflow_ref:
                raise GraphValidationError(f"Subworkflow step {step.id} has no workflow_ref")
            if self.max_concurrency is not None and step.weight > self.max_concurrency:
                raise GraphValidationError(
                    f"Step {step.id} weight {step.weight} exceeds "
                    f"max_concurrency {self.max_concurrency}"
                )

        if self.start_step is not None:
            _require(self.start_step, "start_step")
        for step_id in self.end_steps:
            _require(step_id, "end_steps")
        if self.on_failure_step is not None:
            _require(self.on_failure_step, "on_failure_step")

        if not nx.is_directed_acyclic_graph(dag):
            edges = nx.find_cycle(dag)
            raise GraphCycle([u for u, _ in edges] + [edges[0][0]])

        guards: Dict[str, Guard] = {}
        for step in self.steps:
            if step.guard:
                guards[step.id] = compile_guard(step.guard, self.variables.keys())

        self._dag = dag
        self._by_id = by_id
        self._index = {step.id: i for i, step in enumerate(self.steps)}
        self._guards = guards
        return self

    def to_dag(self) -> nx.DiGraph:
        """Return a copy of the hard-dependency graph."""
        return self._dag.copy()

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.steps]

    def step(self, step_id: str) -> Step:
        return self._by_id[step_id]

    def has_step(self, step_id: str) -> bool:
        return step_id in self._by_id

    def declaration_index(self, step_id: str) -> int:
        return self._index[step_id]

    def guard_for(self, step_id: str) -> Optional[Guard]:
        return self._guards.get(step_id)

    def dependents(self, step_id: str) -> List[str]:
        """Steps that hard-depend on ``step_id``, in declaration order."""
        return sorted(self._dag.successors(step_id), key=self._index.__getitem__)

    def execution_levels(self) -> List[List[str]]:
        """Group step ids by dependency depth, each level in schedule order."""
        return [
            sorted(level, key=lambda s: (self._by_id[s].priority, self._index[s]))
            for level in nx.topological_generations(self._dag)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepGraph":
        return cls.model_validate(data)
