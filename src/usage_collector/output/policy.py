"""
Retry decisions for delivery outcomes.

Client errors are terminal; server and transport errors back off
exponentially with jitter until the attempt cap.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import DeliveryError, RetryExhausted, error_for_outcome
from ..models import DeliveryOutcome


class RetryAction(str, Enum):
    DONE = "done"
    RETRY = "retry"
    GIVE_UP = "give_up"


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    delay: float = 0.0
    error: Optional[DeliveryError] = None


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter and a hard attempt cap.

    Delay before retry ``n`` (after ``n`` failed attempts) is
    ``base_delay * 2**(n-1)``, stretched by up to 50% when jitter is on and
    capped at ``max_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after ``attempt`` failed attempts (1-based)."""
        delay = self.base_delay * (2 ** max(0, attempt - 1))
        if self.jitter:
            # Upward-only spread keeps successive uncapped delays increasing
            delay *= random.uniform(1.0, 1.5)
        return min(delay, self.max_delay)

    def decide(self, attempt: int, outcome: DeliveryOutcome) -> RetryDecision:
        error = error_for_outcome(outcome)
        if error is None:
            return RetryDecision(RetryAction.DONE)
        if not error.retryable:
            return RetryDecision(RetryAction.GIVE_UP, error=error)
        if attempt >= self.max_attempts:
            return RetryDecision(RetryAction.GIVE_UP, error=RetryExhausted(attempt, error))
        return RetryDecision(RetryAction.RETRY, delay=self.backoff(attempt), error=error)
