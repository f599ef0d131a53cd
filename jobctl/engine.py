"""JobEngine: one object wiring the store, registry and components together."""

import random
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional

from .dead_letter import DeadLetterManager
from .logger import configure_logger
from .models import (
    BatchResult,
    Config,
    DeadLetterPage,
    DeadLetterResult,
    Job,
    JobStats,
    JobStatus,
)
from .pipeline import ExecutionPipeline
from .processor import DEFAULT_BATCH_SIZE, DEFAULT_MAX_RUNTIME_MS, BatchProcessor
from .queue import JobQueue, RetryPolicyInput
from .recurring import RecurringRescheduler
from .registry import HandlerRegistry
from .settings import Settings
from .stats import StatsReporter
from .storage import JobStorage
from .telemetry import JobMetrics

logger = configure_logger(__name__)


class JobEngine:
    """Management surface of the job system.

    Example:
        registry = HandlerRegistry()

        @registry.handler("send_email")
        async def send_email(payload, context):
            ...
            return HandlerResult.ok()

        engine = JobEngine(JobStorage("jobs.db"), registry)
        engine.schedule("send_email", {"to": "a@example.com"})
        await engine.process_jobs(batch_size=10, worker_id="worker-1")
    """

    def __init__(
        self,
        storage: JobStorage,
        registry: Optional[HandlerRegistry] = None,
        rng: Optional[random.Random] = None,
        reschedule_recurring: bool = True,
        metrics: Optional[JobMetrics] = None,
    ):
        self.storage = storage
        self.metrics = metrics or JobMetrics()
        self.registry = registry if registry is not None else HandlerRegistry()
        self.queue = JobQueue(storage)

        hooks = [RecurringRescheduler(self.queue)] if reschedule_recurring else []
        self.pipeline = ExecutionPipeline(
            storage, self.registry, on_complete=hooks, rng=rng, metrics=self.metrics
        )
        self.processor = BatchProcessor(storage, self.pipeline, self.metrics)
        self.dead_letter = DeadLetterManager(storage, self.metrics)
        self.stats = StatsReporter(storage)

    @classmethod
    def from_settings(
        cls, settings: Settings, registry: Optional[HandlerRegistry] = None
    ) -> "JobEngine":
        return cls(JobStorage(settings.db_path), registry)

    # Scheduling

    def schedule(
        self,
        name: str,
        payload: Any = None,
        *,
        tenant_id: Optional[str] = None,
        priority: Optional[int] = None,
        scheduled_at: Optional[datetime] = None,
        retry_policy: RetryPolicyInput = None,
        timeout_ms: Optional[int] = None,
        handler_key: Optional[str] = None,
    ) -> str:
        return self.queue.schedule(
            name,
            payload,
            tenant_id=tenant_id,
            priority=priority,
            scheduled_at=scheduled_at,
            retry_policy=retry_policy,
            timeout_ms=timeout_ms,
            handler_key=handler_key,
        )

    def schedule_recurring(
        self,
        name: str,
        payload: Optional[Mapping[str, Any]],
        interval_minutes: float,
        **options: Any,
    ) -> str:
        return self.queue.schedule_recurring(name, payload, interval_minutes, **options)

    def get_job(self, job_id: str) -> Job:
        return self.queue.get_job(job_id)

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> List[Job]:
        return self.queue.list_jobs(status=status, limit=limit, tenant_id=tenant_id)

    # Processing

    async def process_jobs(
        self,
        batch_size: int = DEFAULT_BATCH_SIZE,
        worker_id: str = "default",
        max_runtime_ms: int = DEFAULT_MAX_RUNTIME_MS,
    ) -> BatchResult:
        return await self.processor.process_jobs(
            batch_size=batch_size, worker_id=worker_id, max_runtime_ms=max_runtime_ms
        )

    async def release_stale_claims(self, grace_ms: int = 60000) -> int:
        return await self.processor.release_stale_claims(grace_ms)

    # Dead-letter queue

    def process_dead_letter_queue(
        self,
        manual_retry: bool = False,
        batch_size: int = 50,
        tenant_id: Optional[str] = None,
        older_than: Optional[timedelta] = None,
    ) -> DeadLetterResult:
        return self.dead_letter.process_dead_letter_queue(
            manual_retry=manual_retry,
            batch_size=batch_size,
            tenant_id=tenant_id,
            older_than=older_than,
        )

    def list_dead_letter_jobs(
        self, limit: int = 20, offset: int = 0, tenant_id: Optional[str] = None
    ) -> DeadLetterPage:
        return self.dead_letter.list_jobs(limit=limit, offset=offset, tenant_id=tenant_id)

    def retry_dead_letter_job(self, job_id: str) -> Job:
        return self.dead_letter.retry_job(job_id)

    # Stats and configuration

    def get_job_stats(self) -> JobStats:
        return self.stats.get_job_stats()

    def get_config(self) -> Config:
        return self.storage.get_config()

    def set_config(self, config: Config) -> None:
        self.storage.set_config(config)
        logger.info(f"Configuration updated: {config.model_dump()}")
