"""Helpers for driving a real engine in integration tests."""
from __future__ import annotations

import asyncio
from typing import Callable, Dict, List

import pytest


class Gate:
    """Async step handlers that block until a test releases them."""

    def __init__(self):
        self.events: Dict[str, asyncio.Event] = {}
        self.started: List[str] = []
        self.finished: List[str] = []

    def _event(self, step_id: str) -> asyncio.Event:
        return self.events.setdefault(step_id, asyncio.Event())

    def handler(self, result=None):
        async def _handle(request):
            self.started.append(request.step_id)
            await self._event(request.step_id).wait()
            self.finished.append(request.step_id)
            return result if result is not None else f"{request.step_id} ok"

        return _handle

    def release(self, *step_ids: str) -> None:
        for step_id in step_ids:
            self._event(step_id).set()


@pytest.fixture
def gate() -> Gate:
    return Gate()


@pytest.fixture
def wait_until() -> Callable:
    """Poll a predicate on the event loop until it holds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached in time")
            await asyncio.sleep(interval)

    return _wait
