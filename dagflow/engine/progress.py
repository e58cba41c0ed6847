"""Progress aggregation over step states."""
from __future__ import annotations

from typing import Iterable

from .state import Progress, StepState, StepStatus


def aggregate_progress(step_states: Iterable[StepState]) -> Progress:
    """Derive run progress from step states.

    Args:
        step_states: Every step state of a run

    Returns:
        Progress with counts and a 0-100 completion percentage
    """
    total = completed = failed = skipped = 0
    for state in step_states:
        total += 1
        if state.status is StepStatus.COMPLETED:
            completed += 1
        elif state.status is StepStatus.FAILED:
            failed += 1
        elif state.status is StepStatus.SKIPPED:
            skipped += 1

    percent = round(completed / total * 100, 2) if total else 0.0
    return Progress(
        total=total,
        completed=completed,
        failed=failed,
        skipped=skipped,
        percent=percent,
    )
