"""
Step dispatch collaborators.

The engine never runs step work itself. It hands each ready step to a
``StepDispatcher`` and awaits the outcome; which actor runs the step is
answered by an ``ActorRegistry``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Set, Tuple

from .errors import StepExecutionError
from .graph import Step, StepKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchRequest:
    """Everything a dispatcher gets to know about one step attempt."""

    run_id: str
    step: Step
    attempt: int
    variables: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    actor_id: Optional[str] = None

    @property
    def step_id(self) -> str:
        return self.step.id


@dataclass
class StepOutput:
    """Step result carrying variable updates for the run.

    Handlers return this instead of a bare value when they need to set
    workflow variables, typically from decision steps.
    """

    value: Any = None
    variables: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[DispatchRequest], Any]


class StepDispatcher(ABC):
    """Abstract base class for step dispatchers."""

    @abstractmethod
    async def dispatch(self, request: DispatchRequest) -> Any:
        """Execute one attempt of a step.

        Args:
            request: Step attempt to execute

        Returns:
            Step result, optionally wrapped in StepOutput

        Raises:
            Exception: Any failure; the engine routes it through retry
        """
        pass

    def abort(self, run_id: str, step_id: str) -> None:
        """Ask outstanding work for a step to stop. Cooperative; default no-op."""
        return None


class CallableDispatcher(StepDispatcher):
    """Dispatches steps to registered Python callables.

    Handlers are looked up by step id first, then by step kind. Coroutine
    functions are awaited; plain functions run in the default thread pool so
    they never block the event loop.
    """

    def __init__(self, enable_metrics: bool = True):
        self.enable_metrics = enable_metrics
        self._by_step: Dict[str, Handler] = {}
        self._by_kind: Dict[StepKind, Handler] = {}
        self._aborted: Set[Tuple[str, str]] = set()
        self._metrics = {
            "steps_executed": 0,
            "steps_failed": 0,
        }

    def register(self, step_id: str, handler: Handler) -> "CallableDispatcher":
        self._by_step[step_id] = handler
        return self

    def register_kind(self, kind: StepKind, handler: Handler) -> "CallableDispatcher":
        self._by_kind[StepKind(kind)] = handler
        return self

    def handler_for(self, step: Step) -> Optional[Handler]:
        return self._by_step.get(step.id) or self._by_kind.get(step.kind)

    async def dispatch(self, request: DispatchRequest) -> Any:
        handler = self.handler_for(request.step)
        if handler is None:
            raise StepExecutionError(
                request.step_id,
                f"No handler registered for step {request.step_id} ({request.step.kind.value})",
                attempt=request.attempt,
            )

        logger.info(f"Executing step: {request.step.name} (attempt {request.attempt})")
        try:
            if asyncio.iscoroutinefunction(handler):
                return await handler(request)
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, functools.partial(handler, request))
        except Exception:
            if self.enable_metrics:
                self._metrics["steps_failed"] += 1
            raise
        finally:
            if self.enable_metrics:
                self._metrics["steps_executed"] += 1

    def abort(self, run_id: str, step_id: str) -> None:
        self._aborted.add((run_id, step_id))
        logger.info(f"Abort requested for step {step_id} of run {run_id}")

    def is_aborted(self, run_id: str, step_id: str) -> bool:
        return (run_id, step_id) in self._aborted

    def get_metrics(self) -> Dict[str, Any]:
        return self._metrics.copy()


class DryRunDispatcher(StepDispatcher):
    """Simulates steps from their ``config`` block.

    Recognised keys:

    - ``result``: value the step returns
    - ``fail_times``: number of leading attempts that fail
    - ``sleep``: seconds to wait before finishing
    - ``variables``: workflow variables the step sets on success
    """

    def __init__(self, speed: float = 1.0):
        self.speed = speed
        self.aborted: Set[Tuple[str, str]] = set()

    async def dispatch(self, request: DispatchRequest) -> Any:
        config = request.step.config
        sleep = float(config.get("sleep", 0)) * self.speed
        if sleep > 0:
            await asyncio.sleep(sleep)

        if request.attempt <= int(config.get("fail_times", 0)):
            raise StepExecutionError(
                request.step_id,
                f"Simulated failure of {request.step_id} on attempt {request.attempt}",
                attempt=request.attempt,
            )

        result = config.get("result", f"{request.step_id} done")
        variables = config.get("variables")
        if variables:
            return StepOutput(value=result, variables=dict(variables))
        return result

    def abort(self, run_id: str, step_id: str) -> None:
        self.aborted.add((run_id, step_id))


class ActorRegistry(ABC):
    """Resolves which actor executes a step and whether it is available."""

    @abstractmethod
    def resolve(self, step: Step) -> Optional[str]:
        pass

    @abstractmethod
    def is_available(self, actor_id: str) -> bool:
        pass


class StaticActorRegistry(ActorRegistry):
    """Actor registry backed by fixed assignments.

    Steps name their actor through ``Step.actor``; ``assignments`` maps step
    ids to actors for steps that do not.
    """

    def __init__(
        self,
        assignments: Optional[Mapping[str, str]] = None,
        unavailable: Optional[Set[str]] = None,
    ):
        self.assignments = dict(assignments or {})
        self._unavailable: Set[str] = set(unavailable or ())

    def resolve(self, step: Step) -> Optional[str]:
        return step.actor or self.assignments.get(step.id)

    def is_available(self, actor_id: str) -> bool:
        return actor_id not in self._unavailable

    def set_available(self, actor_id: str, available: bool = True) -> None:
        if available:
            self._unavailable.discard(actor_id)
        else:
            self._unavailable.add(actor_id)
