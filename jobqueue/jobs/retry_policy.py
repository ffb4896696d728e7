"""
Retry and backoff policy.

Backoff is exponential in the attempt number, capped, with optional jitter
that never pushes the delay past the cap.
"""
import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: ``min(max_delay, base * 2**(attempt-1))`` plus jitter."""

    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 3600.0
    jitter_ratio: float = 0.1

    def __post_init__(self):
        if self.base_delay_seconds <= 0:
            raise ValueError("base_delay_seconds must be positive")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError("jitter_ratio must be between 0 and 1")

    def base_backoff(self, attempt: int) -> float:
        """Delay before the next try after ``attempt`` executions, without jitter."""
        exponent = max(attempt, 1) - 1
        # Avoid float overflow for very large attempt counts
        if exponent >= 63:
            return self.max_delay_seconds
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** exponent))

    def backoff_seconds(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        delay = self.base_backoff(attempt)
        if self.jitter_ratio:
            delay += delay * self.jitter_ratio * rand()
        return min(delay, self.max_delay_seconds)


@dataclass(frozen=True)
class JobPolicy:
    """
    Per job type execution policy.

    ``concurrency_limit`` caps how many jobs of the type may hold a live
    lease at once; None means unlimited.
    """

    max_attempts: int
    timeout_seconds: int
    default_priority: int = 50
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    concurrency_limit: int | None = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.concurrency_limit is not None and self.concurrency_limit < 1:
            raise ValueError("concurrency_limit must be >= 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if not 0 <= self.default_priority <= 100:
            raise ValueError("default_priority must be between 0 and 100")
