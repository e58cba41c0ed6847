"""
Run events and the audit trail.

Every accepted state transition produces two records: an ``AuditEntry``
appended to the run's audit log, and an ``Event`` published on the
``EventBus`` for subscribers such as logging, metrics or the trigger
scheduler.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .state import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SCHEDULED = "scheduled"
    STARTED = "started"
    STEP_STARTED = "step-started"
    STEP_COMPLETED = "step-completed"
    STEP_FAILED = "step-failed"
    STEP_RETRYING = "step-retrying"
    STEP_SKIPPED = "step-skipped"
    STEP_CANCELLED = "step-cancelled"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


TERMINAL_EVENTS = frozenset(
    {EventType.COMPLETED, EventType.FAILED, EventType.CANCELLED, EventType.TIMEOUT}
)


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


class Event(BaseModel):
    """A state transition notification."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    step_id: Optional[str] = None
    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    severity: Severity = Severity.INFO
    data: Dict[str, Any] = Field(default_factory=dict)


EventCallback = Callable[[Event], Any]


class EventBus:
    """Fan-out of run events to subscribers.

    Synchronous callbacks run inline and their errors are logged. Coroutine
    callbacks are scheduled as tasks on the running loop and never awaited by
    the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: List[Tuple[EventCallback, Optional[Set[EventType]]]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._lock = threading.Lock()

    def subscribe(
        self,
        callback: EventCallback,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> Callable[[], None]:
        """Register a callback.

        Args:
            callback: Called with each matching event
            event_types: Only deliver these event types (all when omitted)

        Returns:
            Function that removes the subscription
        """
        entry = (callback, set(event_types) if event_types is not None else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for callback, types in subscribers:
            if types is not None and event.type not in types:
                continue
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    self._schedule(result)
            except Exception as e:
                logger.error(f"Event callback error for {event.type.value}: {e}")

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("Dropped async event callback: no running event loop")
            return
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Async event callback failed: {task.exception()}")


@dataclass(frozen=True)
class AuditEntry:
    """Immutable record of one accepted transition."""

    action: str
    actor: str = "engine"
    timestamp: datetime = field(default_factory=utcnow)
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        return cls(
            action=data["action"],
            actor=data.get("actor", "engine"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            details=data.get("details") or {},
        )


class AuditLog(ABC):
    """Append-only audit trail keyed by run id."""

    @abstractmethod
    def append(self, run_id: str, entry: AuditEntry) -> int:
        """Append an entry and return the new length of the run's trail."""
        pass

    @abstractmethod
    def entries(self, run_id: str, since: int = 0) -> List[AuditEntry]:
        """Return the run's entries starting at position ``since``."""
        pass


class InMemoryAuditLog(AuditLog):
    def __init__(self) -> None:
        self._entries: Dict[str, List[AuditEntry]] = {}
        self._lock = threading.Lock()

    def append(self, run_id: str, entry: AuditEntry) -> int:
        with self._lock:
            trail = self._entries.setdefault(run_id, [])
            trail.append(entry)
            return len(trail)

    def entries(self, run_id: str, since: int = 0) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries.get(run_id, [])[since:])
