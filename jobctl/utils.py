"""Time and id helpers."""

import uuid
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as a fixed-width UTC ISO string.

    Naive datetimes are taken to be UTC. The fixed width keeps lexicographic
    order equal to chronological order inside SQLite.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def generate_job_id() -> str:
    return str(uuid.uuid4())


def elapsed_ms(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000.0
