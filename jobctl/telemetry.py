"""OpenTelemetry instruments for job processing.

Instruments come from the global providers unless a meter or tracer is
passed in. With only opentelemetry-api installed they are no-ops; an
application that configures the SDK gets real metrics and spans.
"""

from typing import Optional

from opentelemetry import metrics, trace

INSTRUMENTATION_NAME = "jobctl"

OUTCOME_COMPLETED = "completed"
OUTCOME_RETRY = "retry"
OUTCOME_DEAD_LETTER = "dead_letter"


class JobMetrics:
    """Counters, histograms and the tracer shared by the processing components."""

    def __init__(
        self,
        meter: Optional[metrics.Meter] = None,
        tracer: Optional[trace.Tracer] = None,
    ):
        self.meter = meter or metrics.get_meter(INSTRUMENTATION_NAME)
        self.tracer = tracer or trace.get_tracer(INSTRUMENTATION_NAME)

        self.jobs_processed = self.meter.create_counter(
            "jobs_processed_total",
            unit="1",
            description="Jobs completed successfully",
        )
        self.job_duration = self.meter.create_histogram(
            "job_duration_ms",
            unit="ms",
            description="Handler run time per attempt",
        )
        self.active_jobs = self.meter.create_up_down_counter(
            "active_jobs",
            unit="1",
            description="Jobs currently executing in this process",
        )
        self.dead_letter_jobs = self.meter.create_up_down_counter(
            "dead_letter_jobs",
            unit="1",
            description="Jobs moved into (positive) or out of (negative) the dead letter queue",
        )

    def job_started(self, job_type: str) -> None:
        self.active_jobs.add(1, {"job.type": job_type})

    def job_finished(self, job_type: str) -> None:
        self.active_jobs.add(-1, {"job.type": job_type})

    def record_duration(self, job_type: str, outcome: str, duration_ms: float) -> None:
        self.job_duration.record(
            max(0.0, duration_ms), {"job.type": job_type, "outcome": outcome}
        )

    def record_batch(self, worker_id: str, processed: int, dead_letter: int) -> None:
        if processed:
            self.jobs_processed.add(processed, {"worker_id": worker_id})
        self.dead_letter_added(dead_letter)

    def dead_letter_added(self, count: int) -> None:
        if count:
            self.dead_letter_jobs.add(count)

    def dead_letter_removed(self, count: int) -> None:
        if count:
            self.dead_letter_jobs.add(-count)
