"""
Retry Scheduler: shared by every dispatcher.

Delays come from a small fixed table rather than unbounded exponential
growth: attempt 1 waits 1s, attempt 5 waits 300s, and anything past the
table reuses the last entry. A job whose attempt number exceeds
MAX_RETRIES is terminal.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

RETRY_DELAYS_SECONDS: tuple[int, ...] = (1, 5, 15, 60, 300)
MAX_RETRIES = 5

OUTCOME_SUCCESS = "success"
OUTCOME_RETRY_SCHEDULED = "retry_scheduled"
OUTCOME_FAILED = "failed"


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def next_delay(attempt_number: int) -> timedelta:
    """
    Delay before the given attempt is retried.

    Attempts below 1 clamp to the first entry, attempts past the table
    clamp to the last (300s ceiling).
    """
    index = min(max(attempt_number, 1), len(RETRY_DELAYS_SECONDS)) - 1
    return timedelta(seconds=RETRY_DELAYS_SECONDS[index])


def should_retry(attempt_number: int) -> bool:
    return attempt_number <= MAX_RETRIES


@dataclass(frozen=True)
class RetryDecision:
    """Result of applying the retry table to a failed attempt"""

    outcome: str
    attempt_number: int
    next_retry_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.outcome == OUTCOME_FAILED


def schedule_failure(previous_attempts: int, now: datetime | None = None) -> RetryDecision:
    """
    Decide what happens to a job after one more failed attempt.

    Args:
        previous_attempts: attempt_number stored on the job before this failure
        now: reference time (defaults to utcnow())
    """
    now = now or utcnow()
    attempt = previous_attempts + 1
    if should_retry(attempt):
        return RetryDecision(
            outcome=OUTCOME_RETRY_SCHEDULED,
            attempt_number=attempt,
            next_retry_at=now + next_delay(attempt),
        )
    return RetryDecision(outcome=OUTCOME_FAILED, attempt_number=attempt)
