"""Recurring jobs layered on top of one-shot jobs.

A recurring job is an ordinary job whose payload carries a marker:

    {"_recurring": {"interval_minutes": 15, "run_count": 0}, ...}

The state machine knows nothing about recurrence. When such a job
completes, RecurringRescheduler enqueues the next occurrence with the same
name, tenant, priority and retry policy, interval_minutes later.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .logger import configure_logger
from .models import Job
from .utils import utc_now

logger = configure_logger(__name__)

RECURRING_KEY = "_recurring"


def recurring_marker(interval_minutes: float, run_count: int = 0) -> Dict[str, Any]:
    try:
        interval = float(interval_minutes)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid interval_minutes: {interval_minutes!r}") from None
    if interval <= 0:
        raise ValueError(f"Invalid interval_minutes: {interval_minutes!r}")
    return {"interval_minutes": interval, "run_count": run_count}


def recurring_interval(job: Job) -> Optional[float]:
    """Interval in minutes if job is recurring, else None."""
    if not isinstance(job.payload, dict):
        return None
    marker = job.payload.get(RECURRING_KEY)
    if not isinstance(marker, dict):
        return None
    interval = marker.get("interval_minutes")
    if not isinstance(interval, (int, float)) or interval <= 0:
        return None
    return float(interval)


class RecurringRescheduler:
    """Completion hook that enqueues the next run of a recurring job."""

    def __init__(self, queue):
        self.queue = queue

    def __call__(self, job: Job, completed_at: Optional[datetime] = None) -> Optional[str]:
        interval = recurring_interval(job)
        if interval is None:
            return None

        marker = job.payload[RECURRING_KEY]
        payload = dict(job.payload)
        payload[RECURRING_KEY] = recurring_marker(
            interval, int(marker.get("run_count", 0)) + 1
        )
        next_run = (completed_at or utc_now()) + timedelta(minutes=interval)

        next_id = self.queue.schedule(
            job.name,
            payload,
            tenant_id=job.tenant_id,
            priority=job.priority,
            scheduled_at=next_run,
            retry_policy=job.retry_policy,
            timeout_ms=job.timeout_ms,
            handler_key=job.handler_key,
        )
        logger.info(
            f"Rescheduled recurring job {job.name} as {next_id} at {next_run.isoformat()}",
            extra={"job_id": job.id},
        )
        return next_id
