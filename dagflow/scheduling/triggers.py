"""Trigger definitions."""
from __future__ import annotations

import re
import uuid
from datetime import datetime, time, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..engine.errors import TriggerError

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class TriggerKind(str, Enum):
    MANUAL = "manual"
    CRON = "cron"
    EVENT = "event"
    WEBHOOK = "webhook"
    DEPENDENCY = "dependency"


class QueuePolicy(str, Enum):
    """What to do with a firing while the trigger is at capacity."""

    QUEUE = "queue"
    SKIP = "skip"
    REPLACE = "replace"


class DependencyCondition(str, Enum):
    ALL_SUCCESS = "all-success"
    ANY_SUCCESS = "any-success"
    ANY_COMPLETE = "any-complete"


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise TriggerError(f"Unknown timezone: {name}") from e


class _Model(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=to_camel,
        extra="ignore",
        validate_assignment=True,
    )


class ExecutionWindow(_Model):
    """Time-of-day window in which a trigger may start runs.

    ``days_of_week`` uses 0 for Sunday. A window whose end is before its start
    wraps past midnight.
    """

    start_time: str
    end_time: str
    days_of_week: Optional[List[int]] = None
    timezone: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise TriggerError(f"Invalid time {value!r}, expected HH:MM")
        return value

    @field_validator("days_of_week")
    @classmethod
    def _check_days(cls, value: Optional[List[int]]) -> Optional[List[int]]:
        if value is not None and any(day < 0 or day > 6 for day in value):
            raise TriggerError("days_of_week entries must be between 0 (Sunday) and 6")
        return value

    @staticmethod
    def _parse(value: str) -> time:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))

    def contains(self, moment: datetime, default_tz: Optional[str] = None) -> bool:
        local = moment.astimezone(_zone(self.timezone or default_tz))
        if self.days_of_week is not None:
            sunday_based = (local.weekday() + 1) % 7
            if sunday_based not in self.days_of_week:
                return False
        start, end, now = self._parse(self.start_time), self._parse(self.end_time), local.time()
        if start <= end:
            return start <= now <= end
        return now >= start or now <= end


class Trigger(_Model):
    """Configuration that starts new runs of a workflow."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    kind: TriggerKind = Field(TriggerKind.MANUAL, validation_alias=AliasChoices("kind", "type"))
    enabled: bool = True

    cron_expression: Optional[str] = None
    timezone: Optional[str] = None

    event_type: Optional[str] = None
    event_filter: Dict[str, Any] = Field(default_factory=dict)

    webhook_secret: Optional[str] = None

    dependency_workflow_ids: List[str] = Field(default_factory=list)
    dependency_condition: DependencyCondition = DependencyCondition.ALL_SUCCESS

    inputs: Dict[str, Any] = Field(default_factory=dict)
    max_concurrent_executions: int = Field(1, ge=1)
    queue_policy: QueuePolicy = QueuePolicy.QUEUE
    execution_windows: List[ExecutionWindow] = Field(
        default_factory=list,
        validation_alias=AliasChoices("execution_windows", "executionWindows", "allowedExecutionWindows"),
    )

    last_fired: Optional[datetime] = Field(
        None, validation_alias=AliasChoices("last_fired", "lastFired", "lastTriggered")
    )
    next_scheduled: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_kind(self) -> "Trigger":
        if self.kind is TriggerKind.CRON:
            if not self.cron_expression or not croniter.is_valid(self.cron_expression):
                raise TriggerError(f"Invalid cron expression: {self.cron_expression!r}")
        elif self.kind is TriggerKind.EVENT and not self.event_type:
            raise TriggerError("Event triggers need an event_type")
        elif self.kind is TriggerKind.DEPENDENCY and not self.dependency_workflow_ids:
            raise TriggerError("Dependency triggers need dependency_workflow_ids")
        if self.timezone:
            _zone(self.timezone)
        return self

    def next_fire_time(self, after: datetime) -> Optional[datetime]:
        """Next cron occurrence strictly after ``after``, in UTC."""
        if self.kind is not TriggerKind.CRON:
            return None
        local = after.astimezone(_zone(self.timezone))
        upcoming = croniter(self.cron_expression, local).get_next(datetime)
        return upcoming.astimezone(timezone.utc)

    def in_window(self, moment: datetime) -> bool:
        if not self.execution_windows:
            return True
        return any(window.contains(moment, self.timezone) for window in self.execution_windows)

    def matches_event(self, event_type: str, payload: Mapping[str, Any]) -> bool:
        if self.kind is not TriggerKind.EVENT or event_type != self.event_type:
            return False
        return all(payload.get(key) == value for key, value in self.event_filter.items())

    def summary(self) -> Tuple[str, str, str, bool]:
        return (self.id, self.workflow_id, self.kind.value, self.enabled)
