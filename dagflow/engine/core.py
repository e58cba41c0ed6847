"""
Core DAG orchestration engine.

This module contains the workflow engine that drives runs: it resolves ready
steps, dispatches them within the concurrency budget, routes failures through
the retry controller and the graph's failure policy, enforces step and run
deadlines, persists snapshots and collects metrics.
"""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional

from ..config import EngineConfig, get_engine_config
from .errors import (
    DeadlineExceeded,
    GraphNotFound,
    InvalidTransition,
    RunNotFound,
    StepExecutionError,
    WorkflowError,
)
from .events import AuditEntry, AuditLog, EventBus, InMemoryAuditLog
from .executors import ActorRegistry, DispatchRequest, StepDispatcher, StepOutput
from .graph import BackoffKind, FailurePolicy, RetryPolicy, Step, StepGraph, StepKind
from .machine import Clock, StateMachine
from .retry import RetryController
from .state import StepStatus, WorkflowRun, WorkflowStatus, utcnow

if TYPE_CHECKING:
    from ..state_manager import RunRepository

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Main workflow execution engine."""

    def __init__(
        self,
        dispatcher: StepDispatcher,
        repository: Optional["RunRepository"] = None,
        audit_log: Optional[AuditLog] = None,
        event_bus: Optional[EventBus] = None,
        actor_registry: Optional[ActorRegistry] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[Clock] = None,
        retry_controller: Optional[RetryController] = None,
        enable_metrics: bool = True,
    ):
        """Initialize workflow engine.

        Args:
            dispatcher: Executes step attempts
            repository: Graph and run persistence
            audit_log: Audit trail store; defaults to the repository when it
                implements AuditLog
            event_bus: Event fan-out
            actor_registry: Resolves step actors and their availability
            config: Engine configuration
            clock: Returns the current time
            retry_controller: Retry decisions for failed steps
            enable_metrics: Enable metrics collection
        """
        # Import here to avoid circular imports
        from ..state_manager import InMemoryRunRepository

        self.dispatcher = dispatcher
        self.repository = repository or InMemoryRunRepository()
        if audit_log is None:
            audit_log = self.repository if isinstance(self.repository, AuditLog) else InMemoryAuditLog()
        self.audit_log = audit_log
        self.event_bus = event_bus or EventBus()
        self.actor_registry = actor_registry
        self.config = config or get_engine_config()
        self.clock = clock or utcnow
        self.retry_controller = retry_controller or RetryController(
            default_policy=self._default_retry_policy()
        )
        self.enable_metrics = enable_metrics

        self._graphs: Dict[str, StepGraph] = {}
        self._machines: Dict[str, StateMachine] = {}
        self._drivers: Dict[str, asyncio.Task] = {}
        self._wakeups: Dict[str, asyncio.Event] = {}
        self._step_tasks: Dict[str, Dict[str, asyncio.Task]] = {}
        self._lock = Lock()

        self._metrics = {
            "runs_started": 0,
            "runs_completed": 0,
            "runs_failed": 0,
            "runs_cancelled": 0,
            "steps_dispatched": 0,
            "steps_failed": 0,
            "retries_scheduled": 0,
            "total_duration": 0.0,
        }

    def _default_retry_policy(self) -> RetryPolicy:
        initial = self.config.default_retry_initial_delay_ms
        return RetryPolicy(
            max_attempts=self.config.default_retry_max_attempts,
            backoff=BackoffKind.EXPONENTIAL,
            initial_delay_ms=initial,
            max_delay_ms=max(self.config.default_retry_max_delay_ms, initial),
            jitter=self.config.default_retry_jitter,
        )

    # Graphs

    def register_graph(self, graph: StepGraph) -> str:
        """Register a workflow graph.

        Args:
            graph: Validated step graph

        Returns:
            Graph ID
        """
        with self._lock:
            self._graphs[graph.id] = graph
        self.repository.save_graph(graph)
        logger.info(f"Registered workflow: {graph.name} ({graph.id})")
        return graph.id

    def get_graph(self, graph_id: str) -> StepGraph:
        """Get a registered graph.

        Raises:
            GraphNotFound: If the graph is neither registered nor stored
        """
        graph = self._graphs.get(graph_id)
        if graph is None:
            graph = self.repository.load_graph(graph_id)
            if graph is None:
                raise GraphNotFound(graph_id)
            with self._lock:
                self._graphs[graph_id] = graph
        return graph

    # Runs

    async def start_run(
        self,
        graph_id: str,
        inputs: Optional[Mapping[str, Any]] = None,
        *,
        run_id: Optional[str] = None,
        trigger_id: Optional[str] = None,
        parent_run_id: Optional[str] = None,
        actor: str = "engine",
    ) -> WorkflowRun:
        """Create, prepare and start a run of ``graph_id``.

        Args:
            graph_id: Graph to run
            inputs: Initial variable values
            run_id: Explicit run ID
            trigger_id: Trigger that produced the run
            parent_run_id: Parent run for subworkflow runs
            actor: Who started the run

        Returns:
            The running WorkflowRun

        Raises:
            GraphNotFound: If the graph is unknown
            VariableTypeError: If an input is invalid or a required one missing
            UnknownIdentifier: If an input is not a declared variable
        """
        graph = self.get_graph(graph_id)
        extra = {"run_id": run_id} if run_id else {}
        run = WorkflowRun.for_graph(
            graph, trigger_id=trigger_id, parent_run_id=parent_run_id, **extra
        )
        if run.run_id in self._machines:
            raise WorkflowError(f"Run {run.run_id} already exists")

        machine = self._new_machine(graph, run)
        machine.prepare(inputs, actor=actor)
        machine.start(actor=actor)

        with self._lock:
            self._machines[run.run_id] = machine
            if self.enable_metrics:
                self._metrics["runs_started"] += 1

        self._save(machine)
        self._spawn_driver(run.run_id)
        logger.info(f"Started run {run.run_id} of workflow {graph.name}")
        return run

    async def wait(self, run_id: str, timeout: Optional[float] = None) -> WorkflowRun:
        """Wait until a run reaches a terminal status.

        Raises:
            RunNotFound: If the run is unknown
            asyncio.TimeoutError: If ``timeout`` elapses first
        """
        task = self._drivers.get(run_id)
        if task is None:
            return self.get_run(run_id)
        await asyncio.wait_for(asyncio.shield(task), timeout)
        return self._machines[run_id].run

    async def execute(
        self,
        graph_id: str,
        inputs: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> WorkflowRun:
        """Start a run and wait for it to finish."""
        run = await self.start_run(graph_id, inputs)
        return await self.wait(run.run_id, timeout)

    def get_run(self, run_id: str) -> WorkflowRun:
        """Get a run from memory or the repository.

        Raises:
            RunNotFound: If the run is unknown
        """
        machine = self._machines.get(run_id)
        if machine is not None:
            return machine.run
        snapshot = self.repository.load_snapshot(run_id)
        if snapshot is None:
            raise RunNotFound(run_id)
        return WorkflowRun.from_snapshot(snapshot, self.get_graph(snapshot["graph_id"]))

    def list_runs(self) -> Dict[str, WorkflowStatus]:
        runs = self.repository.list_runs()
        runs.update({run_id: m.run.status for run_id, m in self._machines.items()})
        return runs

    def audit_trail(self, run_id: str, since: int = 0) -> List[AuditEntry]:
        return self.audit_log.entries(run_id, since)

    def active_runs(self) -> List[str]:
        return [run_id for run_id, m in self._machines.items() if not m.run.is_terminal()]

    # Operator controls

    def pause_run(self, run_id: str, actor: str = "operator") -> WorkflowRun:
        """Pause a running run. In-flight steps finish; nothing new starts."""
        machine = self._machine(run_id)
        machine.pause(actor=actor)
        self._save(machine)
        logger.info(f"Paused run {run_id}")
        return machine.run

    def resume_run(self, run_id: str, actor: str = "operator") -> WorkflowRun:
        """Resume a paused run."""
        machine = self._machine(run_id)
        machine.resume(actor=actor)
        self._save(machine)
        if run_id not in self._drivers or self._drivers[run_id].done():
            self._spawn_driver(run_id)
        self._wake(run_id)
        logger.info(f"Resumed run {run_id}")
        return machine.run

    def cancel_run(self, run_id: str, reason: str = "", actor: str = "operator") -> WorkflowRun:
        """Cancel a run, its pending steps and its outstanding step executions."""
        machine = self._machine(run_id)
        running = machine.cancel(reason, actor=actor)
        self._abort_steps(run_id, running)
        self._save(machine)
        self._wake(run_id)
        logger.info(f"Cancelled run {run_id}: {reason or 'no reason given'}")
        return machine.run

    def report_outcome(
        self,
        run_id: str,
        step_id: str,
        result: Any = None,
        error: Optional[str] = None,
        variables: Optional[Mapping[str, Any]] = None,
        actor: str = "operator",
    ) -> WorkflowRun:
        """Report the outcome of a step executed outside the dispatcher.

        Used to finish ``wait`` steps and to feed back externally executed
        work. Outcomes arriving after the run finished are audited and
        rejected.

        Raises:
            InvalidTransition: If the step is unknown, not running, or the run
                is over
        """
        machine = self._machine(run_id)
        if not machine.graph.has_step(step_id):
            raise InvalidTransition("step", step_id, "unknown", "outcome", reason="no such step")
        step = machine.graph.step(step_id)
        if error is not None:
            self._handle_failure(
                machine,
                step,
                StepExecutionError(step_id, error, machine.run.step_states[step_id].attempts),
                actor=actor,
            )
        else:
            self._handle_success(machine, step, StepOutput(result, dict(variables or {})), actor=actor)
        if step.kind is StepKind.WAIT:
            self._disarm_wait(run_id, step.id)
        self._save(machine)
        self._wake(run_id)
        return machine.run

    async def recover(self, run_id: str) -> WorkflowRun:
        """Reload a run from the repository and resume driving it.

        Steps found running are treated as failed attempts and go through the
        retry controller, since their outcome was lost with the old process.
        ``wait`` steps keep waiting for their outcome; their timeout, if any,
        starts again.

        Raises:
            RunNotFound: If no snapshot is stored
            GraphNotFound: If the run's graph is unknown
        """
        snapshot = self.repository.load_snapshot(run_id)
        if snapshot is None:
            raise RunNotFound(run_id)
        graph = self.get_graph(snapshot["graph_id"])
        run = WorkflowRun.from_snapshot(snapshot, graph)
        machine = self._new_machine(graph, run)
        with self._lock:
            self._machines[run_id] = machine

        if run.is_terminal():
            return run

        for step_id in run.steps_with_status(StepStatus.RUNNING):
            step = graph.step(step_id)
            attempt = run.step_states[step_id].attempts
            if step.kind is StepKind.WAIT:
                self._arm_wait(machine, step, attempt)
                continue
            logger.warning(f"Step {step_id} of run {run_id} was interrupted; treating as failed")
            self._handle_failure(
                machine,
                step,
                StepExecutionError(step_id, "Step interrupted by engine restart", attempt),
                actor="recovery",
            )

        if run.status is WorkflowStatus.PENDING:
            machine.start(actor="recovery")
        self._save(machine)
        self._spawn_driver(run_id)
        logger.info(f"Recovered run {run_id} in status {run.status.value}")
        return run

    async def shutdown(self) -> None:
        """Stop every driver and step task without changing run state."""
        tasks = list(self._drivers.values())
        for step_tasks in self._step_tasks.values():
            tasks.extend(step_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def get_metrics(self) -> Dict[str, Any]:
        """Get engine metrics.

        Returns:
            Metrics dictionary
        """
        return self._metrics.copy()

    # Driver

    def _new_machine(self, graph: StepGraph, run: WorkflowRun) -> StateMachine:
        return StateMachine(
            graph,
            run,
            audit_log=self.audit_log,
            event_bus=self.event_bus,
            clock=self.clock,
            concurrency_limit=self.config.default_max_concurrency,
            is_dispatchable=self._is_dispatchable,
        )

    def _machine(self, run_id: str) -> StateMachine:
        machine = self._machines.get(run_id)
        if machine is None:
            raise RunNotFound(run_id)
        return machine

    def _is_dispatchable(self, step: Step) -> bool:
        if self.actor_registry is None:
            return True
        actor_id = self.actor_registry.resolve(step)
        return actor_id is None or self.actor_registry.is_available(actor_id)

    def _spawn_driver(self, run_id: str) -> None:
        self._wakeups[run_id] = asyncio.Event()
        self._step_tasks.setdefault(run_id, {})
        self._drivers[run_id] = asyncio.create_task(
            self._drive(run_id), name=f"dagflow-run-{run_id}"
        )

    def _wake(self, run_id: str) -> None:
        event = self._wakeups.get(run_id)
        if event is not None:
            event.set()

    async def _drive(self, run_id: str) -> None:
        machine = self._machines[run_id]
        wake = self._wakeups[run_id]
        try:
            while not machine.run.is_terminal():
                wake.clear()
                if self._check_deadline(machine):
                    break
                if machine.status is WorkflowStatus.RUNNING:
                    self._advance(machine)
                self._save(machine)
                if machine.run.is_terminal():
                    break
                await self._sleep(machine, wake)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Internal error while driving run {run_id}: {e}")
            machine.escalate(e)
        await self._finalize(machine)

    def _advance(self, machine: StateMachine) -> None:
        """Apply skips and dispatch ready steps until nothing changes."""
        while machine.status is WorkflowStatus.RUNNING:
            now = self.clock()
            resolution = machine.resolve(now)
            if resolution.skip:
                for step_id, reason in resolution.skip.items():
                    if step_id in resolution.guard_errors:
                        logger.warning(f"Skipping step {step_id}: {reason}")
                    else:
                        logger.info(f"Skipping step {step_id}: {reason}")
                    machine.skip_step(step_id, reason)
                continue
            if resolution.dispatch:
                for step_id in resolution.dispatch:
                    self._launch(machine, machine.graph.step(step_id))
                continue
            if machine.try_close(now) is None and not machine.resolve(now).is_idle:
                continue
            break

    def _launch(self, machine: StateMachine, step: Step) -> None:
        actor_id = self.actor_registry.resolve(step) if self.actor_registry else None
        state = machine.start_step(step.id, actor_id=actor_id)
        if step.kind is StepKind.WAIT:
            logger.info(f"Step {step.id} is waiting for an external outcome")
            self._arm_wait(machine, step, state.attempts)
            return

        request = DispatchRequest(
            run_id=machine.run_id,
            step=step,
            attempt=state.attempts,
            variables=MappingProxyType(machine.run.variables.copy().to_dict()),
            actor_id=actor_id,
        )
        task = asyncio.create_task(
            self._execute_step(machine, step, request),
            name=f"dagflow-step-{machine.run_id}-{step.id}",
        )
        self._step_tasks[machine.run_id][step.id] = task
        if self.enable_metrics:
            self._metrics["steps_dispatched"] += 1

    def _arm_wait(self, machine: StateMachine, step: Step, attempt: int) -> None:
        if not step.timeout:
            return
        self._step_tasks.setdefault(machine.run_id, {})[step.id] = asyncio.create_task(
            self._expire_wait(machine, step, attempt),
            name=f"dagflow-wait-{machine.run_id}-{step.id}",
        )

    def _disarm_wait(self, run_id: str, step_id: str) -> None:
        task = self._step_tasks.get(run_id, {}).pop(step_id, None)
        if task is not None:
            task.cancel()

    async def _expire_wait(self, machine: StateMachine, step: Step, attempt: int) -> None:
        """Fail a wait step that received no outcome within its timeout."""
        await asyncio.sleep(step.timeout)
        run_id = machine.run_id
        tasks = self._step_tasks.get(run_id, {})
        if tasks.get(step.id) is asyncio.current_task():
            del tasks[step.id]
        state = machine.run.step_states[step.id]
        if machine.run.is_terminal() or state.status is not StepStatus.RUNNING or state.attempts != attempt:
            return
        logger.warning(f"Step {step.id} of run {run_id} received no outcome within {step.timeout}s")
        try:
            self._handle_failure(machine, step, DeadlineExceeded(step.id, step.timeout, attempt))
        except InvalidTransition as e:
            logger.warning(f"Discarded timeout of step {step.id}: {e}")
        self._save(machine)
        self._wake(run_id)

    async def _execute_step(self, machine: StateMachine, step: Step, request: DispatchRequest) -> None:
        run_id = machine.run_id
        try:
            try:
                result = await self._call_step(machine, step, request)
            except asyncio.CancelledError:
                raise
            except StepExecutionError as e:
                self._handle_failure(machine, step, e)
            except Exception as e:
                self._handle_failure(
                    machine,
                    step,
                    StepExecutionError(step.id, f"{type(e).__name__}: {e}", request.attempt, cause=e),
                )
            else:
                self._handle_success(machine, step, result)
        except InvalidTransition as e:
            logger.warning(f"Discarded outcome of step {step.id}: {e}")
        finally:
            tasks = self._step_tasks.get(run_id, {})
            if tasks.get(step.id) is asyncio.current_task():
                del tasks[step.id]
            self._save(machine)
            self._wake(run_id)

    async def _call_step(self, machine: StateMachine, step: Step, request: DispatchRequest) -> Any:
        if step.kind is StepKind.SUBWORKFLOW:
            call = self._run_subworkflow(machine, step)
        else:
            call = self.dispatcher.dispatch(request)
        if not step.timeout:
            return await call
        try:
            return await asyncio.wait_for(call, step.timeout)
        except asyncio.TimeoutError:
            self.dispatcher.abort(machine.run_id, step.id)
            raise DeadlineExceeded(step.id, step.timeout, request.attempt) from None

    async def _run_subworkflow(self, machine: StateMachine, step: Step) -> Dict[str, Any]:
        child = await self.start_run(
            step.workflow_ref,
            step.config.get("inputs"),
            parent_run_id=machine.run_id,
            actor=f"run:{machine.run_id}",
        )
        try:
            finished = await self.wait(child.run_id)
        except asyncio.CancelledError:
            if not child.is_terminal():
                self.cancel_run(child.run_id, f"parent step {step.id} cancelled", actor=f"run:{machine.run_id}")
            raise
        if finished.status is not WorkflowStatus.COMPLETED:
            raise StepExecutionError(
                step.id, f"Subworkflow run {child.run_id} ended {finished.status.value}"
            )
        return dict(finished.outputs)

    def _handle_success(
        self, machine: StateMachine, step: Step, result: Any, actor: str = "engine"
    ) -> None:
        if isinstance(result, StepOutput):
            value, variables = result.value, result.variables
        else:
            value, variables = result, None
        try:
            machine.complete_step(step.id, value, variables, actor=actor)
        except InvalidTransition:
            raise
        except WorkflowError as e:
            attempt = machine.run.step_states[step.id].attempts
            self._handle_failure(machine, step, StepExecutionError(step.id, str(e), attempt, cause=e), actor)
            return
        logger.info(f"Step {step.id} of run {machine.run_id} completed")

    def _handle_failure(
        self,
        machine: StateMachine,
        step: Step,
        error: StepExecutionError,
        actor: str = "engine",
    ) -> None:
        """Route a failed attempt through retry and the failure policy."""
        run = machine.run
        message = str(error)
        if run.is_terminal():
            machine.reject_late_outcome(step.id, StepStatus.FAILED.value, actor)

        state = run.step_states[step.id]
        policy = machine.graph.failure_policy
        if state.status is StepStatus.RUNNING:
            decision = self.retry_controller.decide(
                step,
                state,
                message,
                self.clock(),
                use_default=policy is FailurePolicy.RETRY_FAILED,
            )
            if decision.retry:
                machine.schedule_retry(step.id, message, decision.retry_at, actor=actor)
                if self.enable_metrics:
                    self._metrics["retries_scheduled"] += 1
                return

        machine.fail_step(step.id, message, actor=actor)
        if self.enable_metrics:
            self._metrics["steps_failed"] += 1
        exhausted = self.retry_controller.exhausted(step, state, message)
        logger.error(f"Run {run.run_id}: {exhausted}")
        self._apply_failure_policy(machine, step, actor)

    def _apply_failure_policy(self, machine: StateMachine, step: Step, actor: str) -> None:
        policy = machine.graph.failure_policy
        if machine.run.failure_handling or policy in (FailurePolicy.FAIL_FAST, FailurePolicy.RETRY_FAILED):
            running = machine.fail_fast(step.id, actor=actor)
            self._abort_steps(machine.run_id, running)
        elif policy is FailurePolicy.MANUAL:
            if machine.status is WorkflowStatus.RUNNING:
                machine.pause(actor=actor, reason=f"step {step.id} failed")
                logger.warning(f"Run {machine.run_id} paused for operator after step {step.id} failed")
        else:
            logger.warning(f"Step {step.id} failed; run {machine.run_id} continues")

    def _abort_steps(self, run_id: str, step_ids: List[str]) -> None:
        tasks = self._step_tasks.get(run_id, {})
        current = asyncio.current_task() if self._in_loop() else None
        for step_id in step_ids:
            self.dispatcher.abort(run_id, step_id)
            task = tasks.get(step_id)
            if task is not None and task is not current:
                task.cancel()

    @staticmethod
    def _in_loop() -> bool:
        try:
            asyncio.get_running_loop()
            return True
        except RuntimeError:
            return False

    def _check_deadline(self, machine: StateMachine) -> bool:
        deadline = machine.run.deadline_at
        if deadline is None or self.clock() < deadline:
            return False
        if machine.status in (WorkflowStatus.RUNNING, WorkflowStatus.PAUSED):
            logger.warning(f"Run {machine.run_id} exceeded its deadline")
            running = machine.time_out()
            self._abort_steps(machine.run_id, running)
        return True

    async def _sleep(self, machine: StateMachine, wake: asyncio.Event) -> None:
        timeout = self.config.scheduler_tick_seconds
        now = self.clock()
        for moment in (machine.resolve(now).next_wakeup, machine.run.deadline_at):
            if moment is not None:
                timeout = min(timeout, max((moment - now).total_seconds(), 0.0))
        try:
            await asyncio.wait_for(wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def _finalize(self, machine: StateMachine) -> None:
        run = machine.run
        leftovers = list(self._step_tasks.get(run.run_id, {}).items())
        for step_id, task in leftovers:
            self.dispatcher.abort(run.run_id, step_id)
            task.cancel()
        if leftovers:
            await asyncio.gather(*(task for _, task in leftovers), return_exceptions=True)

        if self.enable_metrics:
            with self._lock:
                if run.status is WorkflowStatus.COMPLETED:
                    self._metrics["runs_completed"] += 1
                elif run.status is WorkflowStatus.CANCELLED:
                    self._metrics["runs_cancelled"] += 1
                else:
                    self._metrics["runs_failed"] += 1
                self._metrics["total_duration"] += run.get_duration() or 0.0

        self._save(machine)
        logger.info(
            f"Run {run.run_id} finished with status {run.status.value} "
            f"in {run.get_duration() or 0.0:.2f}s"
        )

    def _save(self, machine: StateMachine) -> None:
        self.repository.save_run(machine.run)
