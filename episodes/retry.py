from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence


def backoff_delay(attempt: int, schedule: Sequence[int]) -> timedelta:
    """Delay before retrying after the ``attempt``-th failure (1-based).

    Attempts past the end of ``schedule`` reuse its last entry.
    """

    if not schedule:
        return timedelta(0)
    idx = min(max(1, int(attempt)), len(schedule)) - 1
    return timedelta(seconds=int(schedule[idx]))


def deadline_for(scheduled_delivery_at: datetime, safety_margin: timedelta) -> datetime:
    return scheduled_delivery_at - safety_margin


def should_retry(
    *,
    attempt_count: int,
    max_attempts: int,
    now: datetime,
    delay: timedelta,
    scheduled_delivery_at: datetime,
    safety_margin: timedelta,
) -> bool:
    if int(attempt_count) >= int(max_attempts):
        return False
    return now + delay < deadline_for(scheduled_delivery_at, safety_margin)
