"""
Trigger scheduler.

Turns trigger firings (cron ticks, external events, webhooks, manual fires
and the completion of other workflows) into new runs on a WorkflowEngine,
honouring each trigger's concurrency limit, queue policy and execution
windows.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
import threading
from collections import deque
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Deque, Dict, List, Mapping, Optional, Union

from ..engine.errors import RunNotFound, TriggerError
from ..engine.events import TERMINAL_EVENTS, Event
from ..engine.state import WorkflowRun, WorkflowStatus, utcnow
from .triggers import DependencyCondition, QueuePolicy, Trigger, TriggerKind

if TYPE_CHECKING:
    from ..engine.core import WorkflowEngine

logger = logging.getLogger("dagflow.scheduling")


class TriggerScheduler:
    """Starts workflow runs in response to triggers.

    Cron triggers are evaluated on ``tick()`` against a logical clock, so
    callers (and tests) decide what "now" is. ``run_forever()`` drives
    ``tick()`` from the wall clock.
    """

    def __init__(
        self,
        engine: "WorkflowEngine",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.clock = clock or utcnow
        self._triggers: Dict[str, Trigger] = {}
        self._active: Dict[str, List[str]] = {}
        self._queued: Dict[str, Deque[Dict[str, Any]]] = {}
        self._dependency_results: Dict[str, Dict[str, WorkflowStatus]] = {}
        self._lock = threading.RLock()
        self._metrics = {
            "fired": 0,
            "runs_started": 0,
            "skipped": 0,
            "queued": 0,
            "replaced": 0,
            "outside_window": 0,
        }
        self._unsubscribe = engine.event_bus.subscribe(self._on_run_finished, TERMINAL_EVENTS)

    # Trigger management

    def create_trigger(self, trigger: Union[Trigger, Mapping[str, Any]]) -> Trigger:
        """Register a trigger.

        Args:
            trigger: Trigger model or its dict form

        Returns:
            The registered trigger

        Raises:
            TriggerError: If the configuration is invalid or the id is taken
            GraphNotFound: If the target workflow is not registered
        """
        if not isinstance(trigger, Trigger):
            trigger = Trigger.model_validate(dict(trigger))
        self.engine.get_graph(trigger.workflow_id)

        with self._lock:
            if trigger.id in self._triggers:
                raise TriggerError(f"Trigger {trigger.id} already exists")
            if trigger.kind is TriggerKind.CRON:
                trigger.next_scheduled = trigger.next_fire_time(self.clock())
            self._triggers[trigger.id] = trigger
            self._active[trigger.id] = []
            self._queued[trigger.id] = deque()
            self._dependency_results[trigger.id] = {}

        logger.info(
            f"Created {trigger.kind.value} trigger {trigger.id} for workflow {trigger.workflow_id}"
        )
        return trigger

    def get(self, trigger_id: str) -> Trigger:
        trigger = self._triggers.get(trigger_id)
        if trigger is None:
            raise TriggerError(f"Trigger {trigger_id} not found")
        return trigger

    def list_triggers(self, workflow_id: Optional[str] = None) -> List[Trigger]:
        return [
            t for t in self._triggers.values() if workflow_id is None or t.workflow_id == workflow_id
        ]

    def enable(self, trigger_id: str) -> Trigger:
        trigger = self.get(trigger_id)
        trigger.enabled = True
        if trigger.kind is TriggerKind.CRON:
            trigger.next_scheduled = trigger.next_fire_time(self.clock())
        logger.info(f"Enabled trigger {trigger_id}")
        return trigger

    def disable(self, trigger_id: str) -> Trigger:
        trigger = self.get(trigger_id)
        trigger.enabled = False
        logger.info(f"Disabled trigger {trigger_id}")
        return trigger

    def remove(self, trigger_id: str) -> bool:
        with self._lock:
            if self._triggers.pop(trigger_id, None) is None:
                return False
            self._active.pop(trigger_id, None)
            self._queued.pop(trigger_id, None)
            self._dependency_results.pop(trigger_id, None)
        logger.info(f"Removed trigger {trigger_id}")
        return True

    def queued(self, trigger_id: str) -> int:
        """Number of firings waiting for capacity."""
        return len(self._queued.get(trigger_id, ()))

    def active_runs(self, trigger_id: str) -> List[str]:
        return [run_id for run_id in self._active.get(trigger_id, []) if self._is_active(run_id)]

    # Firing

    async def fire(
        self, trigger_id: str, inputs: Optional[Mapping[str, Any]] = None
    ) -> Optional[WorkflowRun]:
        """Fire a trigger by hand.

        Returns:
            The started run, or None if the firing was skipped, queued or
            fell outside the trigger's execution windows
        """
        trigger = self.get(trigger_id)
        return await self._fire(trigger, inputs, self.clock(), reason="manual")

    async def tick(self, now: Optional[datetime] = None) -> List[WorkflowRun]:
        """Fire every enabled cron trigger that is due at ``now``.

        Missed occurrences are coalesced into a single firing.
        """
        now = now or self.clock()
        started = []
        for trigger in list(self._triggers.values()):
            if trigger.kind is not TriggerKind.CRON or not trigger.enabled:
                continue
            if trigger.next_scheduled is None:
                trigger.next_scheduled = trigger.next_fire_time(now)
                continue
            if trigger.next_scheduled > now:
                continue
            trigger.next_scheduled = trigger.next_fire_time(now)
            run = await self._fire(trigger, None, now, reason="cron")
            if run is not None:
                started.append(run)
        return started

    async def emit_event(
        self, event_type: str, payload: Optional[Mapping[str, Any]] = None
    ) -> List[WorkflowRun]:
        """Deliver an external event to every matching event trigger."""
        payload = dict(payload or {})
        started = []
        for trigger in list(self._triggers.values()):
            if not trigger.enabled or not trigger.matches_event(event_type, payload):
                continue
            run = await self._fire(trigger, payload, self.clock(), reason=f"event {event_type}")
            if run is not None:
                started.append(run)
        return started

    async def receive_webhook(
        self,
        trigger_id: str,
        payload: Optional[Mapping[str, Any]] = None,
        secret: Optional[str] = None,
    ) -> Optional[WorkflowRun]:
        """Handle a webhook call for a webhook trigger.

        Raises:
            TriggerError: If the trigger is not a webhook trigger or the
                secret does not match
        """
        trigger = self.get(trigger_id)
        if trigger.kind is not TriggerKind.WEBHOOK:
            raise TriggerError(f"Trigger {trigger_id} is not a webhook trigger")
        if trigger.webhook_secret and not hmac.compare_digest(
            (secret or "").encode(), trigger.webhook_secret.encode()
        ):
            logger.warning(f"Rejected webhook for trigger {trigger_id}: invalid secret")
            raise TriggerError(f"Invalid webhook secret for trigger {trigger_id}")
        return await self._fire(trigger, payload, self.clock(), reason="webhook")

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick on the wall clock until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        interval = self.engine.config.scheduler_tick_seconds
        logger.info(f"Scheduler loop started (tick {interval}s)")
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Scheduler loop stopped")

    def close(self) -> None:
        self._unsubscribe()

    def get_metrics(self) -> Dict[str, int]:
        return self._metrics.copy()

    # Internals

    def _is_active(self, run_id: str) -> bool:
        try:
            return not self.engine.get_run(run_id).is_terminal()
        except RunNotFound:
            return False

    def _inputs_for(self, trigger: Trigger, payload: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        # Payload keys that are not workflow variables are ignored
        declared = self.engine.get_graph(trigger.workflow_id).variables
        inputs = dict(trigger.inputs)
        for key, value in (payload or {}).items():
            if key in declared:
                inputs[key] = value
        return inputs

    async def _fire(
        self,
        trigger: Trigger,
        payload: Optional[Mapping[str, Any]],
        now: datetime,
        reason: str,
    ) -> Optional[WorkflowRun]:
        if not trigger.enabled:
            logger.debug(f"Trigger {trigger.id} is disabled, ignoring {reason} firing")
            return None
        if not trigger.in_window(now):
            self._metrics["outside_window"] += 1
            logger.info(f"Trigger {trigger.id} fired outside its execution windows, dropped")
            return None

        self._metrics["fired"] += 1
        trigger.last_fired = now
        inputs = self._inputs_for(trigger, payload)

        active = self.active_runs(trigger.id)
        if len(active) >= trigger.max_concurrent_executions:
            if trigger.queue_policy is QueuePolicy.SKIP:
                self._metrics["skipped"] += 1
                logger.info(f"Trigger {trigger.id} at capacity, skipping {reason} firing")
                return None
            if trigger.queue_policy is QueuePolicy.QUEUE:
                self._queued[trigger.id].append(inputs)
                self._metrics["queued"] += 1
                logger.info(
                    f"Trigger {trigger.id} at capacity, queued {reason} firing "
                    f"({len(self._queued[trigger.id])} waiting)"
                )
                return None
            excess = len(active) - trigger.max_concurrent_executions + 1
            for run_id in active[:excess]:
                self.engine.cancel_run(
                    run_id, reason=f"replaced by trigger {trigger.id}", actor=f"trigger:{trigger.id}"
                )
                self._metrics["replaced"] += 1

        logger.info(f"Trigger {trigger.id} fired ({reason})")
        return await self._start(trigger, inputs)

    async def _start(self, trigger: Trigger, inputs: Dict[str, Any]) -> WorkflowRun:
        run = await self.engine.start_run(
            trigger.workflow_id,
            inputs,
            trigger_id=trigger.id,
            actor=f"trigger:{trigger.id}",
        )
        with self._lock:
            active = self._active.setdefault(trigger.id, [])
            active[:] = [run_id for run_id in active if self._is_active(run_id)]
            active.append(run.run_id)
        self._metrics["runs_started"] += 1
        return run

    async def _drain(self, trigger: Trigger) -> None:
        queue = self._queued.get(trigger.id)
        while queue and len(self.active_runs(trigger.id)) < trigger.max_concurrent_executions:
            inputs = queue.popleft()
            logger.info(f"Starting queued firing of trigger {trigger.id} ({len(queue)} left)")
            await self._start(trigger, inputs)

    async def _on_run_finished(self, event: Event) -> None:
        try:
            run = self.engine.get_run(event.run_id)
        except RunNotFound:
            return

        owner = self._triggers.get(run.trigger_id) if run.trigger_id else None
        if owner is not None:
            await self._drain(owner)

        for trigger in list(self._triggers.values()):
            if trigger.kind is TriggerKind.DEPENDENCY and run.graph_id in trigger.dependency_workflow_ids:
                await self._record_dependency(trigger, run)

    async def _record_dependency(self, trigger: Trigger, run: WorkflowRun) -> None:
        results = self._dependency_results.setdefault(trigger.id, {})
        results[run.graph_id] = run.status

        condition = trigger.dependency_condition
        if condition is DependencyCondition.ANY_COMPLETE:
            satisfied = True
        elif condition is DependencyCondition.ANY_SUCCESS:
            satisfied = run.status is WorkflowStatus.COMPLETED
        else:
            satisfied = all(
                results.get(workflow_id) is WorkflowStatus.COMPLETED
                for workflow_id in trigger.dependency_workflow_ids
            )
        if not satisfied:
            return

        results.clear()
        await self._fire(
            trigger,
            {"upstream_run_id": run.run_id},
            self.clock(),
            reason=f"dependency {run.graph_id} {run.status.value}",
        )
