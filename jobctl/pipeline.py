"""Execution of a single claimed job."""

import asyncio
import contextvars
import inspect
import random
import threading
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional

from .backoff import next_retry
from .errors import HandlerNotFoundError, JobTimeoutError
from .logger import configure_logger
from .models import HandlerResult, Job, JobOutcome, JobStatus
from .registry import Handler, HandlerRegistry
from .storage import JobStorage
from .telemetry import (
    OUTCOME_COMPLETED,
    OUTCOME_DEAD_LETTER,
    OUTCOME_RETRY,
    JobMetrics,
)
from .utils import utc_now

logger = configure_logger(__name__)

CompletionHook = Callable[[Job, datetime], Any]

DEFAULT_FAILURE_MESSAGE = "Job failed"
EXHAUSTED_MESSAGE = "Max retries exceeded"
CLAIM_LOST_MESSAGE = "claim lost"


@dataclass
class JobContext:
    """Execution context handed to a handler alongside the payload.

    ``deadline`` is reset to timeout_ms from the moment the handler starts
    running. Coroutine handlers are cancelled when the deadline passes.
    Synchronous handlers run in a thread that cannot be interrupted, so they
    should check ``cancelled`` or ``time_remaining()`` and return early.
    """

    job_id: str
    tenant_id: Optional[str]
    retry_count: int
    handler_key: str
    deadline: datetime
    _cancel_event: threading.Event = field(
        default_factory=threading.Event, init=False, repr=False
    )

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        self._cancel_event.set()

    def time_remaining(self) -> float:
        """Seconds left before the deadline, never negative."""
        return max(0.0, (self.deadline - utc_now()).total_seconds())


def coerce_result(raw: Any) -> HandlerResult:
    """Normalize what a handler returned into a HandlerResult."""
    if isinstance(raw, HandlerResult):
        return raw
    if raw is None:
        return HandlerResult.ok()
    if isinstance(raw, Mapping):
        return HandlerResult.model_validate(dict(raw))
    raise TypeError(f"Handler returned unsupported result type {type(raw).__name__}")


class ExecutionPipeline:
    """Runs one claimed job and records its outcome."""

    def __init__(
        self,
        storage: JobStorage,
        registry: HandlerRegistry,
        on_complete: Optional[List[CompletionHook]] = None,
        rng: Optional[random.Random] = None,
        metrics: Optional[JobMetrics] = None,
    ):
        self.storage = storage
        self.registry = registry
        self.on_complete: List[CompletionHook] = list(on_complete or [])
        self.rng = rng
        self.metrics = metrics or JobMetrics()

    async def execute(self, job: Job, executor: Optional[Executor] = None) -> JobOutcome:
        """
        Execute a job already claimed by the batch processor.

        Failures of the handler never raise out of here; only store errors
        while recording the outcome do.

        Args:
            job: The claimed job
            executor: Where synchronous handlers run. Store calls never use
                it, so a handler waiting for a thread cannot starve them.
        """
        with self.metrics.tracer.start_as_current_span("jobs.process_single") as span:
            span.set_attribute("job.id", job.id)
            span.set_attribute("job.type", job.handler_key)
            span.set_attribute("job.retry_count", job.retry_count)

            outcome = await self._execute(job, executor)

            span.set_attribute("job.status", str(outcome.status))
            span.set_attribute("job.scheduled_retry", outcome.status == JobStatus.PENDING)
            span.set_attribute("job.max_retries_exceeded", outcome.dead_letter)
            return outcome

    async def _execute(self, job: Job, executor: Optional[Executor]) -> JobOutcome:
        started_at = utc_now()
        if not await asyncio.to_thread(
            self.storage.mark_started, job.id, job.claim_token, started_at
        ):
            return self._claim_lost(job)
        job.started_at = started_at

        logger.debug(
            f"Executing job {job.id} ({job.handler_key}) attempt {job.retry_count + 1}",
            extra={"job_id": job.id, "worker_id": job.locked_by},
        )
        self.metrics.job_started(job.handler_key)
        try:
            result = await self._run_handler(job, executor)
            return await self._record(job, result)
        finally:
            self.metrics.job_finished(job.handler_key)

    async def _run_handler(self, job: Job, executor: Optional[Executor] = None) -> HandlerResult:
        context = JobContext(
            job_id=job.id,
            tenant_id=job.tenant_id,
            retry_count=job.retry_count,
            handler_key=job.handler_key,
            deadline=job.started_at + timedelta(milliseconds=job.timeout_ms),
        )
        try:
            handler = self.registry.get(job.handler_key)
            raw = await self._invoke_with_deadline(handler, job, context, executor)
            return coerce_result(raw)
        except JobTimeoutError as e:
            logger.warning(
                f"Job {job.id} exceeded its {job.timeout_ms}ms timeout",
                extra={"job_id": job.id},
            )
            return HandlerResult.retryable(str(e))
        except HandlerNotFoundError as e:
            logger.error(str(e), extra={"job_id": job.id})
            return HandlerResult.retryable(str(e))
        except Exception as e:
            logger.error(f"Job {job.id} raised: {e}", extra={"job_id": job.id}, exc_info=True)
            return HandlerResult.retryable(str(e) or type(e).__name__)

    async def _invoke_with_deadline(
        self,
        handler: Handler,
        job: Job,
        context: JobContext,
        executor: Optional[Executor] = None,
    ) -> Any:
        """
        Run the handler, raising JobTimeoutError once timeout_ms has passed.

        Only the deadline maps to JobTimeoutError. A TimeoutError raised by
        the handler itself propagates like any other exception.
        """
        # The clock starts once the handler is actually running
        if inspect.iscoroutinefunction(handler):
            context.deadline = utc_now() + timedelta(milliseconds=job.timeout_ms)
            pending = handler(job.payload, context)
        else:
            try:
                pending = await self._start_in_thread(
                    handler, job.payload, context, executor, job.timeout_ms
                )
            except asyncio.CancelledError:
                context.cancel()
                raise

        task = asyncio.ensure_future(self._await_result(pending))
        try:
            done, _ = await asyncio.wait({task}, timeout=job.timeout_ms / 1000.0)
        except asyncio.CancelledError:
            task.cancel()
            context.cancel()
            raise

        if not done:
            context.cancel()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise JobTimeoutError(job.timeout_ms)
        return task.result()

    @staticmethod
    async def _start_in_thread(
        handler: Handler,
        payload: Any,
        context: JobContext,
        executor: Optional[Executor],
        timeout_ms: int,
    ) -> "asyncio.Future[Any]":
        """Submit a synchronous handler and wait until a thread picks it up."""
        loop = asyncio.get_running_loop()
        started = asyncio.Event()

        def run():
            context.deadline = utc_now() + timedelta(milliseconds=timeout_ms)
            loop.call_soon_threadsafe(started.set)
            return handler(payload, context)

        future = loop.run_in_executor(executor, contextvars.copy_context().run, run)
        future.add_done_callback(lambda _: started.set())
        await started.wait()
        return future

    @staticmethod
    async def _await_result(pending: Any) -> Any:
        result = await pending
        if inspect.isawaitable(result):
            return await result
        return result

    async def _record(self, job: Job, result: HandlerResult) -> JobOutcome:
        now = utc_now()
        log_extra = {"job_id": job.id}
        duration_ms = (now - job.started_at).total_seconds() * 1000

        if result.success:
            if not await asyncio.to_thread(
                self.storage.complete_job, job.id, job.claim_token, now
            ):
                return self._claim_lost(job)
            self.metrics.record_duration(job.handler_key, OUTCOME_COMPLETED, duration_ms)
            logger.info(f"Job {job.id} ({job.name}) completed", extra=log_extra)
            await self._run_completion_hooks(job, now)
            return JobOutcome(job_id=job.id, status=JobStatus.COMPLETED, processed=True)

        if result.retry and not job.retries_exhausted:
            reason = result.error or DEFAULT_FAILURE_MESSAGE
            retry_at = next_retry(
                job.retry_delay_ms,
                job.retry_backoff_multiplier,
                job.retry_count,
                jitter=job.retry_jitter,
                max_delay_ms=job.retry_max_delay_ms,
                rng=self.rng,
                now=now,
            )
            if not await asyncio.to_thread(
                self.storage.schedule_retry,
                job.id,
                job.claim_token,
                job.retry_count + 1,
                retry_at,
                reason,
                now,
            ):
                return self._claim_lost(job)
            self.metrics.record_duration(job.handler_key, OUTCOME_RETRY, duration_ms)
            logger.info(
                f"Job {job.id} failed ({reason}); retry {job.retry_count + 1}/"
                f"{job.max_retries} at {retry_at.isoformat()}",
                extra=log_extra,
            )
            return JobOutcome(
                job_id=job.id, status=JobStatus.PENDING, error=True, error_message=reason
            )

        reason = result.error or EXHAUSTED_MESSAGE
        if not await asyncio.to_thread(
            self.storage.dead_letter_job, job.id, job.claim_token, reason, now
        ):
            return self._claim_lost(job)
        self.metrics.record_duration(job.handler_key, OUTCOME_DEAD_LETTER, duration_ms)
        logger.error(
            f"Job {job.id} moved to dead letter queue after "
            f"{job.retry_count + 1} attempt(s). Error: {reason}",
            extra=log_extra,
        )
        return JobOutcome(
            job_id=job.id,
            status=JobStatus.DEAD_LETTER,
            error=True,
            dead_letter=True,
            error_message=reason,
        )

    async def _run_completion_hooks(self, job: Job, completed_at: datetime) -> None:
        for hook in self.on_complete:
            try:
                await asyncio.to_thread(hook, job, completed_at)
            except Exception as e:
                # The job is already completed; a hook cannot undo that.
                logger.error(
                    f"Completion hook failed for job {job.id}: {e}",
                    extra={"job_id": job.id},
                    exc_info=True,
                )

    @staticmethod
    def _claim_lost(job: Job) -> JobOutcome:
        logger.warning(
            f"Job {job.id} is no longer claimed by {job.locked_by}; outcome discarded",
            extra={"job_id": job.id},
        )
        return JobOutcome(
            job_id=job.id,
            status=job.status,
            error=True,
            error_message=CLAIM_LOST_MESSAGE,
        )
