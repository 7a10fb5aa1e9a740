"""Retry policy configuration for workflow nodes."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for a workflow node."""

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    multiplier: float = 2.0
    max_backoff_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)
        if self.backoff_seconds < 0 or self.max_backoff_seconds < 0:
            raise ValueError("backoff values must be non-negative")

    def allows(self, attempt_number: int) -> bool:
        """Return True if another attempt is allowed after attempt_number."""
        return attempt_number < self.max_attempts

    def delay_for(self, attempt_number: int) -> float:
        """Backoff before the attempt following attempt_number, capped."""
        if self.backoff_seconds <= 0:
            return 0.0
        delay = self.backoff_seconds * (self.multiplier ** max(attempt_number - 1, 0))
        return min(delay, self.max_backoff_seconds)


NO_RETRY = RetryPolicy(max_attempts=1, backoff_seconds=0)
