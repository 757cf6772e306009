from __future__ import annotations

from datetime import datetime, timedelta


def compute_backoff(
    attempt: int, base: float = 30.0, factor: float = 2.0, cap: float = 300.0
) -> float:
    """Compute capped exponential backoff in seconds for the given attempt (1-based)."""
    delay = base * factor ** max(attempt - 1, 0)
    return min(delay, cap)


def next_retry_at(
    now: datetime, attempt: int, base: float = 30.0, factor: float = 2.0, cap: float = 300.0
) -> datetime:
    """Return the moment the retry after ``attempt`` becomes due."""
    return now + timedelta(seconds=compute_backoff(attempt, base, factor, cap))
