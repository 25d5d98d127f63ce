"""Retry policy — bounded attempts with capped exponential backoff.

The policy is pure: given an attempt number and the current clock time it
computes when the next attempt may start, or ``None`` once attempts are
exhausted.  The worker owns the waiting.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class RetryPolicy(BaseModel):
    """Exponential backoff for transient delivery failures.

    The delay before attempt ``n + 1`` is
    ``base_delay_ms * multiplier ** (n - 1)``, capped at ``max_delay_ms``
    and never shorter than a sink-requested ``retry_after``.
    """

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    base_delay_ms: int = Field(default=500, ge=0)
    max_delay_ms: int = Field(default=30_000, ge=0)
    multiplier: float = Field(default=2.0, ge=1.0)

    def delay_seconds(self, attempt_number: int, retry_after: float | None = None) -> float:
        """Backoff in seconds after the failed attempt *attempt_number* (1-based)."""
        delay_ms = self.base_delay_ms * self.multiplier ** max(attempt_number - 1, 0)
        delay = min(delay_ms, self.max_delay_ms) / 1000.0
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay

    def next_retry_at(
        self, attempt_number: int, now: float, retry_after: float | None = None
    ) -> float | None:
        """Clock time at which attempt ``attempt_number + 1`` may start.

        Returns ``None`` when *attempt_number* was the last allowed attempt.
        """
        if attempt_number >= self.max_attempts:
            return None
        return now + self.delay_seconds(attempt_number, retry_after)
