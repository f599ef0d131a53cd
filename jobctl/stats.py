"""Job statistics over a rolling window."""

from datetime import timedelta

from .models import JobStats, JobStatus
from .storage import JobStorage
from .utils import elapsed_ms, utc_now

STATS_WINDOW = timedelta(hours=24)


class StatsReporter:
    def __init__(self, storage: JobStorage, window: timedelta = STATS_WINDOW):
        self.storage = storage
        self.window = window

    def get_job_stats(self) -> JobStats:
        """Counts of jobs created in the window by status, and mean run time.

        avg_duration_ms averages completed_at - started_at over jobs that
        completed successfully inside the window; it is 0 when there are none.
        """
        since = utc_now() - self.window
        counts = self.storage.counts_by_status(since)
        spans = self.storage.completion_spans(since)

        durations = [elapsed_ms(started, completed) for started, completed in spans]
        avg_duration = sum(durations) / len(durations) if durations else 0.0

        return JobStats(
            pending=counts[JobStatus.PENDING],
            running=counts[JobStatus.RUNNING],
            completed=counts[JobStatus.COMPLETED],
            failed=counts[JobStatus.FAILED],
            dead_letter=counts[JobStatus.DEAD_LETTER],
            avg_duration_ms=avg_duration,
        )
