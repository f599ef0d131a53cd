"""Exponential backoff with jitter for job retries."""

import random
from datetime import datetime, timedelta
from typing import Optional

from .utils import utc_now

MIN_RETRY_DELAY_MS = 1000
JITTER_RATIO = 0.25


def compute_delay_ms(
    base_delay_ms: float,
    multiplier: float,
    retry_count: int,
    jitter: bool = True,
    max_delay_ms: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay before the next attempt: base * multiplier ** retry_count.

    With jitter the delay is moved by up to +/-25%. The result is never
    below one second and never above max_delay_ms when a cap is given.
    """
    delay = base_delay_ms * (multiplier ** retry_count)

    if jitter:
        source = rng or random
        delay += delay * JITTER_RATIO * source.uniform(-1.0, 1.0)

    if max_delay_ms is not None:
        delay = min(delay, max_delay_ms)
    return max(float(MIN_RETRY_DELAY_MS), delay)


def next_retry(
    base_delay_ms: float,
    multiplier: float,
    retry_count: int,
    jitter: bool = True,
    max_delay_ms: Optional[float] = None,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Timestamp at which a failed job becomes eligible again."""
    delay = compute_delay_ms(
        base_delay_ms, multiplier, retry_count, jitter, max_delay_ms, rng
    )
    return (now or utc_now()) + timedelta(milliseconds=delay)
