"""Dead-letter queue management: listing, requeueing and purging."""

from datetime import timedelta
from typing import Optional

from .errors import JobNotFoundError
from .logger import configure_logger
from .models import DeadLetterPage, DeadLetterResult, Job, JobStatus
from .storage import JobStorage
from .telemetry import JobMetrics
from .utils import utc_now

logger = configure_logger(__name__)

MAX_BATCH_SIZE = 100
MAX_PAGE_SIZE = 100


class DeadLetterManager:
    """Operator actions on jobs that exhausted their retries."""

    def __init__(self, storage: JobStorage, metrics: Optional[JobMetrics] = None):
        self.storage = storage
        self.metrics = metrics or JobMetrics()

    def process_dead_letter_queue(
        self,
        manual_retry: bool = False,
        batch_size: int = 50,
        tenant_id: Optional[str] = None,
        older_than: Optional[timedelta] = None,
    ) -> DeadLetterResult:
        """
        Requeue or delete dead-letter jobs that have sat untouched long enough.

        Only jobs whose updated_at is older than older_than (default: the
        configured dead_letter_age_hours, 24h) are touched, at most
        batch_size of them, oldest first.

        Args:
            manual_retry: Requeue the jobs with a fresh retry budget instead
                of deleting them
            batch_size: Maximum jobs handled in this call (1-100)
            tenant_id: Restrict to one tenant's jobs
            older_than: Override the age threshold

        Returns:
            Counts of requeued and deleted jobs
        """
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        if older_than is None:
            older_than = timedelta(hours=self.storage.get_config().dead_letter_age_hours)

        now = utc_now()
        jobs = self.storage.dead_letter_older_than(now - older_than, batch_size, tenant_id)

        result = DeadLetterResult()
        for job in jobs:
            if manual_retry:
                if self.storage.requeue_dead_letter(job.id, now):
                    result.requeued += 1
            elif self.storage.delete_dead_letter(job.id):
                result.deleted += 1
        self.metrics.dead_letter_removed(result.requeued + result.deleted)

        if jobs:
            logger.info(
                f"Dead letter queue processed: requeued={result.requeued} deleted={result.deleted}",
                extra={"tenant_id": tenant_id},
            )
        return result

    def retry_job(self, job_id: str) -> Job:
        """Requeue one dead-letter job immediately, regardless of its age."""
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.DEAD_LETTER:
            raise ValueError(f"Job {job_id} is not in the dead letter queue (status={job.status})")

        if not self.storage.requeue_dead_letter(job_id, utc_now()):
            raise ValueError(f"Job {job_id} left the dead letter queue concurrently")
        self.metrics.dead_letter_removed(1)
        logger.info(f"Job {job_id} moved back to queue for retry", extra={"job_id": job_id})
        return self.storage.get_job(job_id)

    def list_jobs(
        self, limit: int = 20, offset: int = 0, tenant_id: Optional[str] = None
    ) -> DeadLetterPage:
        """Page through dead-letter jobs, most recently failed first."""
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if offset < 0:
            raise ValueError("offset must not be negative")

        jobs, total = self.storage.list_dead_letter(limit, offset, tenant_id)
        return DeadLetterPage(jobs=jobs, total=total, limit=limit, offset=offset)
