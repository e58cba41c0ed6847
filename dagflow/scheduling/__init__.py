"""Triggers that start workflow runs."""

from .triggers import DependencyCondition, ExecutionWindow, QueuePolicy, Trigger, TriggerKind
from .scheduler import TriggerScheduler

__all__ = [
    "DependencyCondition",
    "ExecutionWindow",
    "QueuePolicy",
    "Trigger",
    "TriggerKind",
    "TriggerScheduler",
]
