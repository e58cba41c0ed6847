"""Retry and backoff decisions for failed steps."""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .errors import RetryExhausted
from .graph import BackoffKind, RetryPolicy, Step
from .state import StepState

logger = logging.getLogger(__name__)

NO_RETRY = RetryPolicy(max_attempts=1)


def compute_delay(
    policy: RetryPolicy, attempt: int, rng: Optional[random.Random] = None
) -> float:
    """Calculate the backoff before retrying after a failed attempt.

    Args:
        policy: Retry policy of the step
        attempt: Number of the attempt that just failed (1-based)
        rng: Random source used for jitter

    Returns:
        Delay in seconds, never negative
    """
    attempt = max(attempt, 1)
    initial = policy.initial_delay_ms / 1000.0

    if policy.backoff is BackoffKind.LINEAR:
        delay = initial * attempt
    elif policy.backoff is BackoffKind.EXPONENTIAL:
        delay = initial * (2 ** (attempt - 1))
    else:
        delay = initial

    if policy.max_delay_ms is not None:
        delay = min(delay, policy.max_delay_ms / 1000.0)

    if policy.jitter:
        spread = delay * policy.jitter
        delay += (rng or random).uniform(-spread, spread)

    return max(0.0, delay)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a retry decision.

    Attributes:
        retry: Whether the step should be attempted again
        delay: Backoff in seconds before the next attempt
        retry_at: When the next attempt becomes due
        attempt: Number of the attempt that failed
    """

    retry: bool
    delay: float = 0.0
    retry_at: Optional[datetime] = None
    attempt: int = 0


class RetryController:
    """Decides whether a failed step is re-queued and when."""

    def __init__(
        self,
        default_policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize retry controller.

        Args:
            default_policy: Policy for steps that declare none
            rng: Random source used for jitter
        """
        self.default_policy = default_policy
        self.rng = rng or random.Random()

    def policy_for(self, step: Step, use_default: bool = False) -> RetryPolicy:
        if step.retry is not None:
            return step.retry
        if use_default and self.default_policy is not None:
            return self.default_policy
        return NO_RETRY

    def decide(
        self,
        step: Step,
        state: StepState,
        error: str,
        now: datetime,
        use_default: bool = False,
    ) -> RetryDecision:
        """Decide what happens after ``step`` failed its current attempt.

        Args:
            step: Failed step
            state: Step state; ``attempts`` counts the attempt that failed
            error: Error message of the failure
            now: Failure time
            use_default: Apply the default policy when the step has none

        Returns:
            RetryDecision
        """
        policy = self.policy_for(step, use_default)
        attempt = state.attempts

        if attempt >= policy.max_attempts:
            logger.info(f"Step {step.id} exhausted {attempt}/{policy.max_attempts} attempts")
            return RetryDecision(retry=False, attempt=attempt)

        delay = compute_delay(policy, attempt, self.rng)
        logger.info(
            f"Retrying step {step.id} in {delay:.2f}s "
            f"(attempt {attempt + 1}/{policy.max_attempts}): {error}"
        )
        return RetryDecision(
            retry=True,
            delay=delay,
            retry_at=now + timedelta(seconds=delay),
            attempt=attempt,
        )

    @staticmethod
    def exhausted(step: Step, state: StepState, error: str) -> RetryExhausted:
        return RetryExhausted(step.id, state.attempts, error)
