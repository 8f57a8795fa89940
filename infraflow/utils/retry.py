"""Retry policies and backoff delay calculation."""

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_MS = 30000
JITTER_RATIO = 0.1


class RetryStrategy(str, Enum):
    """Retry strategy types."""

    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy for a workflow step."""

    max_attempts: int = 1
    delay_ms: int = 1000
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    jitter: bool = True
    retry_on_codes: Optional[List[str]] = field(default=None)

    @classmethod
    def single_attempt(cls) -> "RetryPolicy":
        return cls(max_attempts=1, delay_ms=0, jitter=False)

    def delay_for_attempt(self, attempt: int) -> int:
        return calculate_retry_delay(
            attempt,
            self.delay_ms,
            self.strategy,
            self.backoff_multiplier,
            self.max_delay_ms,
            self.jitter,
        )

    def allows_code(self, code: Optional[str]) -> bool:
        if self.retry_on_codes is None:
            return True
        return code in self.retry_on_codes


def calculate_retry_delay(
    attempt: int,
    base_delay_ms: float,
    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    jitter: bool = True,
) -> int:
    """Delay in milliseconds to wait before retrying after ``attempt`` failed.

    ``attempt`` is 1-indexed. With jitter enabled the delay moves by up to
    10% in either direction.
    """
    if strategy == RetryStrategy.FIXED:
        delay = base_delay_ms
    elif strategy == RetryStrategy.LINEAR:
        delay = base_delay_ms * attempt
    else:
        delay = base_delay_ms * (backoff_multiplier ** (attempt - 1))

    delay = min(delay, max_delay_ms)

    if jitter:
        jitter_amount = delay * JITTER_RATIO
        delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0, round(delay))
