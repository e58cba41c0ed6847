"""
Run state machine.

``StateMachine`` is the only writer of a ``WorkflowRun``. Every public method
takes the machine's re-entrant lock, checks that the requested move is legal
for the current status, and only then mutates the run. A rejected move raises
``InvalidTransition`` and leaves the run untouched.

Each accepted transition is appended to the audit log and published as an
event; step transitions also refresh the derived progress, active and waiting
views of the run.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import InvalidTransition, OutputAlreadySet, VariableTypeError
from .events import AuditEntry, AuditLog, Event, EventBus, EventType, InMemoryAuditLog, Severity
from .graph import FailurePolicy, Step, StepGraph
from .progress import aggregate_progress
from .resolver import Resolution, blocked_steps, remaining_budget, resolve_ready
from .state import (
    STEP_SATISFIED,
    RunFailure,
    StepState,
    StepStatus,
    WorkflowRun,
    WorkflowStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_CANCELLABLE = frozenset({StepStatus.PENDING, StepStatus.RUNNING, StepStatus.RETRYING})


class StateMachine:
    """Validates and applies status transitions for one run."""

    def __init__(
        self,
        graph: StepGraph,
        run: WorkflowRun,
        *,
        audit_log: Optional[AuditLog] = None,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Clock] = None,
        concurrency_limit: Optional[int] = None,
        is_dispatchable: Optional[Callable[[Step], bool]] = None,
    ):
        """Initialize the state machine.

        Args:
            graph: Step graph of the run
            run: Run to manage
            audit_log: Destination for audit entries
            event_bus: Destination for events
            clock: Returns the current time
            concurrency_limit: Limit used when the graph declares no
                ``max_concurrency``
            is_dispatchable: Predicate holding back steps whose actor is
                unavailable
        """
        if run.graph_id != graph.id:
            raise ValueError(f"Run {run.run_id} belongs to graph {run.graph_id}, not {graph.id}")
        self.graph = graph
        self.run = run
        self.audit_log = audit_log or InMemoryAuditLog()
        self.event_bus = event_bus or EventBus()
        self.clock = clock or utcnow
        self.concurrency_limit = concurrency_limit
        self.is_dispatchable = is_dispatchable
        self._lock = threading.RLock()

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def status(self) -> WorkflowStatus:
        return self.run.status

    def resolve(self, now: Optional[datetime] = None) -> Resolution:
        """Run the ready-step resolver against the current state."""
        with self._lock:
            return resolve_ready(
                self.graph,
                self.run,
                now=now or self.clock(),
                budget=remaining_budget(self.graph, self.run, self.concurrency_limit),
                is_dispatchable=self.is_dispatchable,
            )

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self.run.to_snapshot()

    # Step transitions

    def start_step(self, step_id: str, actor: str = "engine", actor_id: Optional[str] = None) -> StepState:
        """Move a pending or due retrying step to running.

        Returns:
            The updated step state
        """
        with self._lock:
            state = self._step(step_id)
            if self.run.status is not WorkflowStatus.RUNNING:
                raise InvalidTransition(
                    "step", step_id, state.status.value, StepStatus.RUNNING.value,
                    reason=f"run is {self.run.status.value}",
                )
            if state.status not in (StepStatus.PENDING, StepStatus.RETRYING):
                raise InvalidTransition("step", step_id, state.status.value, StepStatus.RUNNING.value)
            now = self.clock()
            if state.status is StepStatus.RETRYING and state.retry_at and state.retry_at > now:
                raise InvalidTransition(
                    "step", step_id, state.status.value, StepStatus.RUNNING.value,
                    reason="retry is not due yet",
                )

            state.status = StepStatus.RUNNING
            state.attempts += 1
            state.last_attempt_at = now
            state.started_at = state.started_at or now
            state.retry_at = None
            state.actor_id = actor_id
            self._step_changed(
                "step_started",
                EventType.STEP_STARTED,
                step_id,
                actor,
                {"attempt": state.attempts, "actor_id": actor_id},
            )
            return state

    def complete_step(
        self,
        step_id: str,
        result: Any = None,
        variables: Optional[Mapping[str, Any]] = None,
        actor: str = "engine",
    ) -> StepState:
        """Record a successful outcome for a running step.

        The step's result is written to ``outputs[step_id]`` and any variable
        updates are applied atomically; if either is rejected nothing changes.

        Raises:
            InvalidTransition: If the step is not running or the run is over
            OutputAlreadySet: If the step's output was already written
            VariableTypeError: If a variable update has the wrong type
            UnknownIdentifier: If a variable update names an undeclared variable
        """
        with self._lock:
            state = self._outcome_target(step_id, StepStatus.COMPLETED, actor)
            if step_id in self.run.outputs:
                raise OutputAlreadySet(step_id)
            if variables:
                self.run.variables.update(variables)
            self.run.set_output(step_id, result)

            state.status = StepStatus.COMPLETED
            state.finished_at = self.clock()
            state.result = result
            state.error = None
            self._step_changed(
                "step_completed",
                EventType.STEP_COMPLETED,
                step_id,
                actor,
                {"attempt": state.attempts, "variables": sorted(variables or {})},
            )
            return state

    def fail_step(self, step_id: str, error: str, actor: str = "engine") -> StepState:
        """Record a terminal failure for a running step."""
        with self._lock:
            state = self._outcome_target(step_id, StepStatus.FAILED, actor)
            state.status = StepStatus.FAILED
            state.finished_at = self.clock()
            state.error = error
            self._step_changed(
                "step_failed",
                EventType.STEP_FAILED,
                step_id,
                actor,
                {"attempt": state.attempts, "error": error},
                severity=Severity.ERROR,
            )
            return state

    def schedule_retry(
        self, step_id: str, error: str, retry_at: datetime, actor: str = "engine"
    ) -> StepState:
        """Park a running step whose failed attempt will be retried at ``retry_at``."""
        with self._lock:
            state = self._outcome_target(step_id, StepStatus.RETRYING, actor)
            state.status = StepStatus.RETRYING
            state.retry_at = retry_at
            state.error = error
            self._step_changed(
                "step_retrying",
                EventType.STEP_RETRYING,
                step_id,
                actor,
                {"attempt": state.attempts, "error": error, "retry_at": retry_at.isoformat()},
                severity=Severity.WARN,
            )
            return state

    def skip_step(self, step_id: str, reason: str, actor: str = "engine") -> StepState:
        """Resolve a pending step directly to skipped."""
        with self._lock:
            state = self._step(step_id)
            if self.run.is_terminal():
                raise InvalidTransition(
                    "step", step_id, state.status.value, StepStatus.SKIPPED.value,
                    reason=f"run is {self.run.status.value}",
                )
            if state.status is not StepStatus.PENDING:
                raise InvalidTransition("step", step_id, state.status.value, StepStatus.SKIPPED.value)
            self._skip(state, reason, actor)
            return state

    def cancel_step(self, step_id: str, reason: str = "", actor: str = "engine") -> StepState:
        """Cancel a pending, running or retrying step."""
        with self._lock:
            state = self._step(step_id)
            if self.run.is_terminal() or state.status not in _CANCELLABLE:
                raise InvalidTransition("step", step_id, state.status.value, StepStatus.CANCELLED.value)
            self._cancel(state, reason, actor)
            return state

    # Workflow transitions

    def prepare(self, inputs: Optional[Mapping[str, Any]] = None, actor: str = "engine") -> None:
        """Move a draft run to pending and apply its input variables.

        Raises:
            InvalidTransition: If the run is not a draft
            VariableTypeError: If an input has the wrong type or a required
                variable is missing
            UnknownIdentifier: If an input names an undeclared variable
        """
        with self._lock:
            self._require_status(WorkflowStatus.PENDING, WorkflowStatus.DRAFT)
            staged = self.run.variables.copy()
            if inputs:
                staged.update(inputs)
            missing = staged.missing_required()
            if missing:
                spec = self.graph.variables[missing[0]]
                raise VariableTypeError(missing[0], spec.type.value, None)
            self.run.variables = staged

            for step_id in self.graph.step_ids:
                self.run.step_states.setdefault(step_id, StepState(step_id))
            self.run.status = WorkflowStatus.PENDING
            self._refresh()
            self._record(
                "run_prepared",
                EventType.SCHEDULED,
                actor,
                {"inputs": sorted(inputs or {}), "trigger_id": self.run.trigger_id},
            )

    def start(self, actor: str = "engine") -> bool:
        """Move a pending run to running.

        Returns:
            True if the run was started, False if it was already running
        """
        with self._lock:
            if self.run.status is WorkflowStatus.RUNNING:
                return False
            self._require_status(WorkflowStatus.RUNNING, WorkflowStatus.PENDING)
            now = self.clock()
            if self.run.started_at is None:
                self.run.started_at = now
                if self.graph.timeout_seconds:
                    self.run.deadline_at = now + timedelta(seconds=self.graph.timeout_seconds)
            self.run.status = WorkflowStatus.RUNNING
            self._refresh()
            self._record(
                "run_started",
                EventType.STARTED,
                actor,
                {"deadline_at": self.run.deadline_at.isoformat() if self.run.deadline_at else None},
            )
            return True

    def pause(self, actor: str = "engine", reason: Optional[str] = None) -> None:
        with self._lock:
            self._require_status(WorkflowStatus.PAUSED, WorkflowStatus.RUNNING)
            self.run.status = WorkflowStatus.PAUSED
            self._record("run_paused", EventType.PAUSED, actor, {"reason": reason})

    def resume(self, actor: str = "engine") -> None:
        with self._lock:
            self._require_status(WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)
            self.run.status = WorkflowStatus.RUNNING
            self._record("run_resumed", EventType.RESUMED, actor, {})

    def complete(self, actor: str = "engine") -> None:
        with self._lock:
            self._require_status(WorkflowStatus.COMPLETED, WorkflowStatus.RUNNING)
            self._finish(WorkflowStatus.COMPLETED)
            self._record(
                "run_completed",
                EventType.COMPLETED,
                actor,
                {"progress": self.run.progress.to_dict()},
            )

    def fail(self, failure: Optional[RunFailure] = None, actor: str = "engine") -> List[str]:
        """Fail the run, cancelling every step that has not finished.

        Returns:
            Ids of steps that were running when the run failed
        """
        with self._lock:
            self._require_status(
                WorkflowStatus.FAILED,
                WorkflowStatus.DRAFT,
                WorkflowStatus.PENDING,
                WorkflowStatus.RUNNING,
                WorkflowStatus.PAUSED,
            )
            if failure is not None and self.run.error is None:
                self.run.error = failure
            if self.run.error is None:
                self.run.error = RunFailure(None, 0, "Run failed")
            running = self._cancel_all("run failed", actor)
            self._finish(WorkflowStatus.FAILED)
            self._record(
                "run_failed",
                EventType.FAILED,
                actor,
                self.run.error.to_dict(),
                severity=Severity.CRITICAL if self.run.error.internal else Severity.ERROR,
            )
            return running

    def cancel(self, reason: str = "", actor: str = "engine") -> List[str]:
        """Cancel the run and every step that has not finished.

        Returns:
            Ids of steps that were running when the run was cancelled
        """
        with self._lock:
            self._require_status(
                WorkflowStatus.CANCELLED,
                WorkflowStatus.DRAFT,
                WorkflowStatus.PENDING,
                WorkflowStatus.RUNNING,
                WorkflowStatus.PAUSED,
            )
            running = self._cancel_all(reason or "run cancelled", actor)
            self._finish(WorkflowStatus.CANCELLED)
            self._record(
                "run_cancelled",
                EventType.CANCELLED,
                actor,
                {"reason": reason},
                severity=Severity.WARN,
            )
            return running

    def time_out(self, actor: str = "engine") -> List[str]:
        """Force the run into ``timeout`` once its deadline has passed.

        Returns:
            Ids of steps that were running at the deadline
        """
        with self._lock:
            self._require_status(WorkflowStatus.TIMEOUT, WorkflowStatus.RUNNING, WorkflowStatus.PAUSED)
            timeout = self.graph.timeout_seconds or 0.0
            self.run.error = RunFailure(
                None, 0, f"Run exceeded its deadline of {timeout:.2f}s"
            )
            running = self._cancel_all("run timed out", actor)
            self._finish(WorkflowStatus.TIMEOUT)
            self._record(
                "run_timed_out",
                EventType.TIMEOUT,
                actor,
                self.run.error.to_dict(),
                severity=Severity.ERROR,
            )
            return running

    def escalate(self, exc: BaseException, actor: str = "engine") -> None:
        """Fail the run because of an unexpected internal error."""
        with self._lock:
            if self.run.is_terminal():
                logger.error(f"Internal error after run {self.run_id} finished: {exc}")
                return
            self.run.error = RunFailure(
                None, 0, f"Internal error: {type(exc).__name__}: {exc}", internal=True
            )
            self.fail(actor=actor)

    def record_failure(self, step_id: str, actor: str = "engine") -> RunFailure:
        """Remember the first exhausted step failure as the run's failure."""
        with self._lock:
            state = self._step(step_id)
            failure = RunFailure(step_id, state.attempts, state.error or "")
            if self.run.error is None:
                self.run.error = failure
            return self.run.error

    def fail_fast(self, step_id: str, actor: str = "engine") -> List[str]:
        """Stop the run after ``step_id`` failed for good.

        Every other unfinished step is cancelled. If the graph declares an
        ``on_failure_step`` that has not run yet it is released and the run
        stays open until it finishes; otherwise the run fails now.

        Returns:
            Ids of steps that were running and have been cancelled
        """
        with self._lock:
            self.record_failure(step_id, actor)
            if self._activate_failure_handler(actor):
                return self._cancel_all(
                    f"step {step_id} failed", actor, keep=self.graph.on_failure_step
                )
            if self.run.is_terminal():
                return []
            return self.fail(actor=actor)

    def try_close(self, now: Optional[datetime] = None, actor: str = "engine") -> Optional[WorkflowStatus]:
        """Close the run if no step can make further progress.

        Returns:
            The terminal status the run was closed with, or None if it is
            still open
        """
        with self._lock:
            if self.run.status is not WorkflowStatus.RUNNING:
                return None
            if self.run.steps_with_status(StepStatus.RUNNING, StepStatus.RETRYING):
                return None
            resolution = self.resolve(now)
            if not resolution.is_idle or resolution.waiting:
                return None

            if self._run_succeeded():
                self._settle_leftovers(actor)
                self.complete(actor)
                return WorkflowStatus.COMPLETED

            if self._activate_failure_handler(actor):
                return None
            if self.run.error is None:
                self.run.error = self._close_failure()
            self._settle_leftovers(actor)
            self.fail(actor=actor)
            return WorkflowStatus.FAILED

    def reject_late_outcome(self, step_id: str, outcome: str, actor: str = "engine") -> None:
        """Audit an outcome that arrived after the run finished."""
        with self._lock:
            current = self.run.step_states[step_id].status.value if step_id in self.run.step_states else "unknown"
            self._audit(
                "late_outcome_rejected",
                actor,
                {"step_id": step_id, "outcome": outcome, "run_status": self.run.status.value},
            )
            logger.warning(
                f"Rejected late {outcome} for step {step_id} of {self.run.status.value} run {self.run_id}"
            )
            raise InvalidTransition(
                "step", step_id, current, outcome, reason=f"run is {self.run.status.value}"
            )

    # Internals

    def _step(self, step_id: str) -> StepState:
        try:
            return self.run.step_states[step_id]
        except KeyError:
            raise InvalidTransition("step", step_id, "unknown", "any", reason="no such step") from None

    def _outcome_target(self, step_id: str, target: StepStatus, actor: str) -> StepState:
        state = self._step(step_id)
        if self.run.is_terminal():
            self.reject_late_outcome(step_id, target.value, actor)
        if state.status is not StepStatus.RUNNING:
            raise InvalidTransition("step", step_id, state.status.value, target.value)
        return state

    def _require_status(self, target: WorkflowStatus, *allowed: WorkflowStatus) -> None:
        if self.run.status not in allowed:
            raise InvalidTransition("workflow", self.run_id, self.run.status.value, target.value)

    def _run_succeeded(self) -> bool:
        if not self.run.steps_with_status(StepStatus.FAILED):
            return True
        if self.graph.failure_policy not in (FailurePolicy.CONTINUE, FailurePolicy.MANUAL):
            return False
        return all(
            self.run.step_states[step_id].status in STEP_SATISFIED
            for step_id in self.graph.end_steps
        )

    def _close_failure(self) -> RunFailure:
        for step_id in self.graph.end_steps:
            state = self.run.step_states[step_id]
            if state.status not in STEP_SATISFIED:
                return RunFailure(
                    step_id, state.attempts, state.error or f"end step {step_id} did not complete"
                )
        failed = self.run.steps_with_status(StepStatus.FAILED)
        state = self.run.step_states[failed[0]]
        return RunFailure(state.step_id, state.attempts, state.error or "")

    def _activate_failure_handler(self, actor: str) -> bool:
        handler = self.graph.on_failure_step
        if handler is None or self.run.failure_handling:
            return False
        if self.run.step_states[handler].status is not StepStatus.PENDING:
            return False
        self.run.failure_handling = True
        self._audit("failure_handler_activated", actor, {"step_id": handler})
        logger.info(f"Run {self.run_id} released failure handler {handler}")
        return True

    def _settle_leftovers(self, actor: str) -> None:
        """Resolve steps that can no longer run before the run closes."""
        handler = self.graph.on_failure_step
        if handler and self.run.step_states[handler].status is StepStatus.PENDING:
            self._skip(self.run.step_states[handler], "no failure to handle", actor)
        for step_id in blocked_steps(self.graph, self.run):
            self._cancel(self.run.step_states[step_id], "upstream step did not complete", actor)
        for step_id in self.run.steps_with_status(StepStatus.PENDING):
            self._cancel(self.run.step_states[step_id], "unreachable", actor)

    def _skip(self, state: StepState, reason: str, actor: str) -> None:
        state.status = StepStatus.SKIPPED
        state.finished_at = self.clock()
        state.skip_reason = reason
        self._step_changed("step_skipped", EventType.STEP_SKIPPED, state.step_id, actor, {"reason": reason})

    def _cancel(self, state: StepState, reason: str, actor: str) -> None:
        state.status = StepStatus.CANCELLED
        state.finished_at = self.clock()
        state.retry_at = None
        self._step_changed(
            "step_cancelled",
            EventType.STEP_CANCELLED,
            state.step_id,
            actor,
            {"reason": reason},
            severity=Severity.WARN,
        )

    def _cancel_all(self, reason: str, actor: str, keep: Optional[str] = None) -> List[str]:
        running = []
        for state in self.run.step_states.values():
            if state.step_id == keep or state.status not in _CANCELLABLE:
                continue
            if state.status is StepStatus.RUNNING:
                running.append(state.step_id)
            self._cancel(state, reason, actor)
        return running

    def _finish(self, status: WorkflowStatus) -> None:
        self.run.status = status
        self.run.finished_at = self.clock()
        self._refresh()

    def _refresh(self) -> None:
        self.run.progress = aggregate_progress(self.run.step_states.values())
        self.run.active_steps = self.run.steps_with_status(StepStatus.RUNNING)
        if self.run.is_terminal():
            self.run.waiting_steps = []
        else:
            self.run.waiting_steps = list(self.resolve().waiting)

    def _audit(self, action: str, actor: str, details: Dict[str, Any]) -> None:
        entry = AuditEntry(action=action, actor=actor, timestamp=self.clock(), details=details)
        self.run.audit_cursor = self.audit_log.append(self.run_id, entry)
        self.run.last_action = action

    def _record(
        self,
        action: str,
        event_type: EventType,
        actor: str,
        details: Dict[str, Any],
        step_id: Optional[str] = None,
        severity: Severity = Severity.INFO,
    ) -> None:
        if step_id is not None:
            details = {"step_id": step_id, **details}
        self._audit(action, actor, details)
        self.event_bus.publish(
            Event(
                run_id=self.run_id,
                step_id=step_id,
                type=event_type,
                timestamp=self.clock(),
                severity=severity,
                data=details,
            )
        )

    def _step_changed(
        self,
        action: str,
        event_type: EventType,
        step_id: str,
        actor: str,
        details: Dict[str, Any],
        severity: Severity = Severity.INFO,
    ) -> None:
        self._refresh()
        self._record(action, event_type, actor, details, step_id=step_id, severity=severity)
