"""Global pytest fixtures and configuration.

This module provides shared fixtures for all tests including:
- A controllable clock for retry and cron timing
- Graph builders for the common dependency shapes
- Engine configuration isolated from the environment
- A ready-to-use engine backed by a callable dispatcher
"""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

import pytest

from dagflow.config import ConfigPriority, EngineConfig
from dagflow.engine import (
    CallableDispatcher,
    StateMachine,
    StepGraph,
    WorkflowEngine,
    WorkflowRun,
)


class FakeClock:
    """Clock whose time only moves when a test says so."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def reset_engine_config(monkeypatch):
    """Keep configuration singletons and DAGFLOW_* variables out of every test."""
    for key in list(os.environ):
        if key.startswith("DAGFLOW_"):
            monkeypatch.delenv(key, raising=False)
    EngineConfig.reset()
    yield
    EngineConfig.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine configuration with a short tick and fast default retries."""
    EngineConfig.set_overlay(
        ConfigPriority.CLI,
        {
            "scheduler_tick_seconds": 0.05,
            "default_retry_initial_delay_ms": 10,
            "default_retry_max_delay_ms": 50,
            "default_retry_jitter": 0.0,
        },
    )
    return EngineConfig()


@pytest.fixture
def make_graph() -> Callable[..., StepGraph]:
    """Build a StepGraph from compact step dicts."""

    def _make(steps: List[Dict[str, Any]], **kwargs: Any) -> StepGraph:
        kwargs.setdefault("id", "test-graph")
        kwargs.setdefault("name", "Test graph")
        return StepGraph.from_dict({"steps": steps, **kwargs})

    return _make


@pytest.fixture
def diamond_graph(make_graph) -> StepGraph:
    """S1 -> {S2, S3} -> S4."""
    return make_graph(
        [
            {"id": "S1"},
            {"id": "S2", "depends_on": ["S1"]},
            {"id": "S3", "depends_on": ["S1"]},
            {"id": "S4", "depends_on": ["S2", "S3"]},
        ]
    )


@pytest.fixture
def make_machine(clock) -> Callable[..., StateMachine]:
    """Create a state machine for a fresh run, optionally prepared and started."""

    def _make(graph: StepGraph, inputs=None, start: bool = True, **kwargs: Any) -> StateMachine:
        run = WorkflowRun.for_graph(graph)
        machine = StateMachine(graph, run, clock=clock, **kwargs)
        if start:
            machine.prepare(inputs)
            machine.start()
        return machine

    return _make


@pytest.fixture
def dispatcher() -> CallableDispatcher:
    return CallableDispatcher()


@pytest.fixture
def engine(dispatcher, engine_config) -> WorkflowEngine:
    return WorkflowEngine(dispatcher, config=engine_config)
