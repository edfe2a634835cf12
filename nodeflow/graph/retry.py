"""
Retry policy for node processor failures.

Attempts are numbered from 1. A node gets up to ``max_retries + 1`` tries;
the wait before retry ``n`` (i.e. after failed attempt ``n``) is
``retry_delay * backoff_multiplier ** (n - 1)`` milliseconds.

Only processor failures are retried. Validation failures and missing
processors are never retried.
"""

from pydantic import BaseModel, Field


def should_retry(attempt: int, max_retries: int) -> bool:
    """True if another try is allowed after failed attempt ``attempt``."""
    return attempt <= max_retries


def delay_for(attempt: int, retry_delay: float, backoff_multiplier: float) -> float:
    """Backoff in milliseconds before the try that follows ``attempt``."""
    return retry_delay * backoff_multiplier ** (attempt - 1)


class RetryPolicy(BaseModel):
    """Per-run retry settings. ``retry_delay`` is in milliseconds."""

    max_retries: int = Field(default=3, ge=0, alias="maxRetries")
    retry_delay: float = Field(default=1000, ge=0, alias="retryDelay")
    backoff_multiplier: float = Field(default=2.0, ge=1, alias="backoffMultiplier")

    model_config = {"populate_by_name": True, "frozen": True}

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def should_retry(self, attempt: int) -> bool:
        return should_retry(attempt, self.max_retries)

    def delay_for(self, attempt: int) -> float:
        return delay_for(attempt, self.retry_delay, self.backoff_multiplier)
