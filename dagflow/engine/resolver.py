"""
Ready-step resolution.

The resolver is a pure function of a step graph and a run: it never mutates
the run, so it can be called as often as the engine likes and after a restart
it gives the same answer from a restored snapshot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from .errors import GuardEvaluationError
from .graph import Step, StepGraph
from .state import STEP_SATISFIED, StepStatus, WorkflowRun, utcnow


@dataclass(frozen=True)
class Resolution:
    """Result of one resolver pass.

    Attributes:
        ready: Pending steps to dispatch now, in dispatch order
        due_retries: Retrying steps whose backoff has elapsed, in dispatch order
        skip: Pending steps to skip, mapped to the reason
        guard_errors: Skipped steps whose guard could not be evaluated
        waiting: Eligible steps held back by the concurrency budget or actor
            availability, plus retrying steps that are not yet due
        next_wakeup: Earliest future retry time, if any
    """

    ready: Tuple[str, ...] = ()
    due_retries: Tuple[str, ...] = ()
    skip: Dict[str, str] = field(default_factory=dict)
    guard_errors: FrozenSet[str] = frozenset()
    waiting: Tuple[str, ...] = ()
    next_wakeup: Optional[datetime] = None

    @property
    def dispatch(self) -> Tuple[str, ...]:
        return self.due_retries + self.ready

    @property
    def is_idle(self) -> bool:
        """True when there is nothing to dispatch or skip."""
        return not (self.ready or self.due_retries or self.skip)


def active_weight(graph: StepGraph, run: WorkflowRun) -> int:
    return sum(
        graph.step(step_id).weight
        for step_id, state in run.step_states.items()
        if state.status is StepStatus.RUNNING
    )


def remaining_budget(
    graph: StepGraph, run: WorkflowRun, limit: Optional[int] = None
) -> Optional[int]:
    """Concurrency budget left for ``run``.

    Args:
        graph: Step graph of the run
        run: Workflow run
        limit: Concurrency limit to use when the graph declares none

    Returns:
        Remaining weight, or None when concurrency is unlimited
    """
    cap = graph.max_concurrency if graph.max_concurrency is not None else limit
    if cap is None:
        return None
    return max(cap - active_weight(graph, run), 0)


def dependencies_satisfied(graph: StepGraph, run: WorkflowRun, step: Step) -> bool:
    return all(run.step_states[dep].status in STEP_SATISFIED for dep in step.depends_on)


def _order(graph: StepGraph, step_ids: List[str]) -> List[str]:
    """Sort by priority band then declaration order, honouring run_after hints.

    A candidate whose ``run_after`` names another candidate is placed after
    it. Hints that form a loop fall back to plain priority order.
    """
    pending = sorted(
        step_ids,
        key=lambda s: (graph.step(s).priority, graph.declaration_index(s)),
    )
    candidates = set(pending)
    ordered: List[str] = []
    placed = set()
    while pending:
        for step_id in pending:
            after = set(graph.step(step_id).run_after) & candidates
            if after <= placed:
                break
        else:
            step_id = pending[0]
        pending.remove(step_id)
        ordered.append(step_id)
        placed.add(step_id)
    return ordered


def resolve_ready(
    graph: StepGraph,
    run: WorkflowRun,
    *,
    now: Optional[datetime] = None,
    budget: Optional[int] = None,
    is_dispatchable: Optional[Callable[[Step], bool]] = None,
) -> Resolution:
    """Compute which steps of ``run`` can be dispatched or skipped now.

    Args:
        graph: Step graph of the run
        run: Current run state (not modified)
        now: Current time, used for retry backoff
        budget: Remaining concurrency weight; defaults to the graph's
            ``max_concurrency`` minus the weight of running steps
        is_dispatchable: Optional predicate holding back steps whose actor
            is unavailable

    Returns:
        Resolution describing ready, retryable, skippable and waiting steps
    """
    now = now or utcnow()
    if budget is None:
        budget = remaining_budget(graph, run)

    candidates: List[str] = []
    due: set = set()
    skip: Dict[str, str] = {}
    guard_errors: set = set()
    waiting: List[str] = []
    next_wakeup: Optional[datetime] = None

    for step in graph.steps:
        state = run.step_states[step.id]

        if state.status is StepStatus.RETRYING:
            if state.retry_at is None or state.retry_at <= now:
                candidates.append(step.id)
                due.add(step.id)
            else:
                waiting.append(step.id)
                if next_wakeup is None or state.retry_at < next_wakeup:
                    next_wakeup = state.retry_at
            continue

        if state.status is not StepStatus.PENDING:
            continue

        if step.id == graph.on_failure_step:
            if run.failure_handling:
                candidates.append(step.id)
            continue

        if not dependencies_satisfied(graph, run, step):
            continue

        guard = graph.guard_for(step.id)
        if guard is not None:
            try:
                passed = guard.evaluate(run.variables)
            except GuardEvaluationError as e:
                skip[step.id] = str(e)
                guard_errors.add(step.id)
                continue
            if not passed:
                skip[step.id] = f"guard {guard.source!r} is false"
                continue

        candidates.append(step.id)

    ready: List[str] = []
    due_retries: List[str] = []
    held: List[str] = []
    exhausted = False
    for step_id in _order(graph, candidates):
        step = graph.step(step_id)
        if exhausted:
            held.append(step_id)
            continue
        if is_dispatchable is not None and not is_dispatchable(step):
            held.append(step_id)
            continue
        if budget is not None:
            if step.weight > budget:
                exhausted = True
                held.append(step_id)
                continue
            budget -= step.weight
        (due_retries if step_id in due else ready).append(step_id)

    order = graph.declaration_index
    return Resolution(
        ready=tuple(ready),
        due_retries=tuple(due_retries),
        skip=skip,
        guard_errors=frozenset(guard_errors),
        waiting=tuple(sorted(held + waiting, key=order)),
        next_wakeup=next_wakeup,
    )


def blocked_steps(graph: StepGraph, run: WorkflowRun) -> List[str]:
    """Pending steps that can never become ready because an upstream step
    failed or was cancelled."""
    blocked: List[str] = []
    dead = set(run.steps_with_status(StepStatus.FAILED, StepStatus.CANCELLED))
    for level in graph.execution_levels():
        for step_id in level:
            if run.step_states[step_id].status is not StepStatus.PENDING:
                continue
            if any(dep in dead for dep in graph.step(step_id).depends_on):
                dead.add(step_id)
                blocked.append(step_id)
    return sorted(blocked, key=graph.declaration_index)
