"""Batch processor: claims due jobs and runs them concurrently."""

import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Optional

from .errors import PersistenceError
from .logger import configure_logger
from .models import BatchResult, JobOutcome, JobStatus
from .pipeline import ExecutionPipeline
from .storage import JobStorage
from .telemetry import JobMetrics
from .utils import utc_now

logger = configure_logger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_MAX_RUNTIME_MS = 5 * 60 * 1000
STALE_CLAIM_MESSAGE = "worker lost"
HANDLER_THREAD_PREFIX = "jobctl-handler"


class BatchProcessor:
    """Claims bounded batches of eligible jobs and dispatches them."""

    def __init__(
        self,
        storage: JobStorage,
        pipeline: ExecutionPipeline,
        metrics: Optional[JobMetrics] = None,
    ):
        self.storage = storage
        self.pipeline = pipeline
        self.metrics = metrics or pipeline.metrics

    async def process_jobs(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        worker_id: str = "default",
        max_runtime_ms: int = DEFAULT_MAX_RUNTIME_MS,
    ) -> BatchResult:
        """
        Process due jobs until the queue drains or max_runtime_ms elapses.

        Each loop iteration claims up to batch_size jobs and runs them all
        concurrently; one job failing never affects the others. A store
        failure while claiming stops the loop and marks the result halted.

        Synchronous handlers of a batch run on a thread pool of their own,
        one thread per claimed job, so they never queue behind each other
        or behind store calls.

        Args:
            batch_size: Maximum jobs claimed (and run at once) per batch
            worker_id: Identifier recorded on claimed jobs
            max_runtime_ms: Time budget for this call

        Returns:
            Aggregate processed / errors / dead_letter counters
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        with self.metrics.tracer.start_as_current_span("jobs.process_batch") as span:
            span.set_attribute("worker.id", worker_id)
            span.set_attribute("jobs.batch_size", batch_size)

            result = await self._process(batch_size, worker_id, max_runtime_ms)

            span.set_attribute("jobs.processed", result.processed)
            span.set_attribute("jobs.errors", result.errors)
            span.set_attribute("jobs.dead_letter", result.dead_letter)
            span.set_attribute("jobs.halted", result.halted)
            self.metrics.record_batch(worker_id, result.processed, result.dead_letter)
            return result

    async def _process(self, batch_size: int, worker_id: str, max_runtime_ms: int) -> BatchResult:
        result = BatchResult()
        started = time.monotonic()
        deadline = started + max_runtime_ms / 1000.0

        while time.monotonic() < deadline:
            try:
                jobs = await asyncio.to_thread(
                    self.storage.claim_batch, batch_size, worker_id, utc_now()
                )
            except PersistenceError as e:
                logger.error(
                    f"Worker {worker_id} could not claim jobs, halting: {e}",
                    extra={"worker_id": worker_id},
                )
                result.errors += 1
                result.halted = True
                break

            if not jobs:
                break

            result.batches += 1
            executor = ThreadPoolExecutor(
                max_workers=len(jobs), thread_name_prefix=HANDLER_THREAD_PREFIX
            )
            try:
                outcomes = await asyncio.gather(
                    *(self.pipeline.execute(job, executor) for job in jobs),
                    return_exceptions=True,
                )
            finally:
                # Handlers that ignored their deadline finish on their own
                executor.shutdown(wait=False)

            for job, outcome in zip(jobs, outcomes):
                if isinstance(outcome, JobOutcome):
                    result.add(outcome)
                elif isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                else:
                    logger.error(
                        f"Job {job.id} could not be recorded: {outcome}",
                        extra={"job_id": job.id, "worker_id": worker_id},
                    )
                    result.errors += 1

        elapsed_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"Worker {worker_id} finished: processed={result.processed} "
            f"errors={result.errors} dead_letter={result.dead_letter} "
            f"batches={result.batches} in {elapsed_ms:.0f}ms",
            extra={"worker_id": worker_id},
        )
        return result

    async def release_stale_claims(self, grace_ms: int = 60000) -> int:
        """
        Recover jobs left running by a worker that died mid-attempt.

        A running job is stale once timeout_ms + grace_ms have passed since
        its attempt began. It becomes failed (and claimable again) while it
        has retries left, otherwise it is dead-lettered.
        """
        now = utc_now()
        candidates = await asyncio.to_thread(
            self.storage.list_running, now - timedelta(milliseconds=grace_ms)
        )

        released = 0
        for job in candidates:
            began = job.started_at or job.updated_at
            if began + timedelta(milliseconds=job.timeout_ms + grace_ms) > now:
                continue

            if not job.retries_exhausted:
                status, retry_count = JobStatus.FAILED, job.retry_count + 1
            else:
                status, retry_count = JobStatus.DEAD_LETTER, job.retry_count

            if await asyncio.to_thread(
                self.storage.release_stale_claim,
                job.id,
                job.claim_token,
                status,
                retry_count,
                STALE_CLAIM_MESSAGE,
                now,
            ):
                released += 1
                if status == JobStatus.DEAD_LETTER:
                    self.metrics.dead_letter_added(1)
                logger.warning(
                    f"Released stale claim on job {job.id} held by {job.locked_by}; now {status}",
                    extra={"job_id": job.id},
                )

        return released

