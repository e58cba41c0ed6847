"""
Workflow DAG execution engine.

This package contains the engine components:
- graph: Immutable step graph definitions
- guards: Guard expression language
- state: Run and step execution state
- resolver: Ready-step resolution
- machine: Run state machine
- retry: Retry/backoff decisions
- events: Event bus and audit log
- executors: Step dispatchers and actor registries
- core: The engine driving runs
"""

from __future__ import annotations

from .errors import (
    DeadlineExceeded,
    GraphCycle,
    GraphNotFound,
    GraphValidationError,
    GuardEvaluationError,
    GuardSyntaxError,
    InvalidTransition,
    OutputAlreadySet,
    RetryExhausted,
    RunNotFound,
    StepExecutionError,
    TriggerError,
    UnknownIdentifier,
    VariableTypeError,
    WorkflowError,
)
from .variables import VariableBag, VariableSpec, VariableType
from .guards import Guard, compile_guard, parse_guard
from .graph import (
    BackoffKind,
    FailurePolicy,
    ResourceHints,
    RetryPolicy,
    Step,
    StepGraph,
    StepKind,
)
from .state import (
    Progress,
    RunFailure,
    StepState,
    StepStatus,
    WorkflowRun,
    WorkflowStatus,
)
from .progress import aggregate_progress
from .resolver import Resolution, resolve_ready
from .events import (
    AuditEntry,
    AuditLog,
    Event,
    EventBus,
    EventType,
    InMemoryAuditLog,
    Severity,
)
from .retry import RetryController, RetryDecision, compute_delay
from .machine import StateMachine
from .executors import (
    ActorRegistry,
    CallableDispatcher,
    DispatchRequest,
    DryRunDispatcher,
    StaticActorRegistry,
    StepDispatcher,
    StepOutput,
)
from .core import WorkflowEngine

__all__ = [
    # Errors
    "WorkflowError",
    "InvalidTransition",
    "GraphValidationError",
    "GraphCycle",
    "GuardSyntaxError",
    "UnknownIdentifier",
    "GuardEvaluationError",
    "VariableTypeError",
    "OutputAlreadySet",
    "StepExecutionError",
    "DeadlineExceeded",
    "RetryExhausted",
    "RunNotFound",
    "GraphNotFound",
    "TriggerError",
    # Definitions
    "VariableBag",
    "VariableSpec",
    "VariableType",
    "Guard",
    "compile_guard",
    "parse_guard",
    "BackoffKind",
    "FailurePolicy",
    "ResourceHints",
    "RetryPolicy",
    "Step",
    "StepGraph",
    "StepKind",
    # State
    "Progress",
    "RunFailure",
    "StepState",
    "StepStatus",
    "WorkflowRun",
    "WorkflowStatus",
    "aggregate_progress",
    "Resolution",
    "resolve_ready",
    "StateMachine",
    # Retry
    "RetryController",
    "RetryDecision",
    "compute_delay",
    # Events
    "AuditEntry",
    "AuditLog",
    "Event",
    "EventBus",
    "EventType",
    "InMemoryAuditLog",
    "Severity",
    # Dispatch
    "ActorRegistry",
    "CallableDispatcher",
    "DispatchRequest",
    "DryRunDispatcher",
    "StaticActorRegistry",
    "StepDispatcher",
    "StepOutput",
    # Engine
    "WorkflowEngine",
]
