"""Exponential backoff with jitter for connection attempts."""
from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Callable, List, Optional

from app.config import ConnectionSettings


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff configuration. Delays are in seconds.

    ``delay(attempt)`` is ``base + U(0, jitter_fraction * base)`` where
    ``base = min(initial_delay * 2**attempt, max_delay)``, and the sum is
    clamped to ``max_delay``. With ``jitter_fraction <= 1`` a jittered delay
    never passes the next attempt's base, so delays are non-decreasing
    across one sequence.
    """

    max_retries: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter_fraction: float = 0.25

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be >= 1")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if not 0.0 <= self.jitter_fraction <= 1.0:
            raise ValueError("jitter_fraction must be within [0, 1]")

    @classmethod
    def from_settings(cls, settings: ConnectionSettings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            initial_delay=settings.initial_retry_delay,
            max_delay=settings.max_retry_delay,
            jitter_fraction=settings.jitter_fraction,
        )

    def base_delay(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError("attempt must be >= 0")
        # cap the exponent; 2**attempt overflows float math for large counts
        if attempt > 62:
            return self.max_delay
        return min(self.initial_delay * (2 ** attempt), self.max_delay)

    def delay(self, attempt: int, rand: Optional[Callable[[], float]] = None) -> float:
        base = self.base_delay(attempt)
        sample = (rand or random.random)()
        jitter = sample * self.jitter_fraction * base
        return min(base + jitter, self.max_delay)

    def schedule(self, rand: Optional[Callable[[], float]] = None) -> List[float]:
        """Delays slept between the attempts of one full sequence."""
        return [self.delay(i, rand) for i in range(self.max_retries - 1)]

    def max_total_delay(self) -> float:
        """Upper bound on time spent sleeping during one sequence."""
        return sum(self.schedule(lambda: 1.0))


__all__ = ["RetryPolicy"]
