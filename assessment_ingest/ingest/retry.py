"""Bounded retry with exponential backoff for persistence calls."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    # Total attempts per call, including the first one
    attempts: int = 3
    # Delay after the first failure; doubles after each further failure
    backoff: float = 0.5
    # Upper bound for a single delay
    max_backoff: float = 5.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError(f"attempts must be >= 1, got {self.attempts}")
        if self.backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff values must not be negative")

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(attempts=1, backoff=0.0, max_backoff=0.0)

    def delay(self, failed_attempt: int) -> float:
        """Seconds to wait after attempt number ``failed_attempt`` (1-based) failed."""
        return min(self.backoff * (2 ** (failed_attempt - 1)), self.max_backoff)

    def should_retry(self, failed_attempt: int) -> bool:
        return failed_attempt < self.attempts
