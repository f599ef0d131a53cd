"""Data models for jobs, handler results and configuration."""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

MIN_PRIORITY = 0
MAX_PRIORITY = 10


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"

    def __str__(self):
        return self.value


# Statuses the batch processor may claim from
CLAIMABLE_STATUSES = (JobStatus.PENDING, JobStatus.FAILED)


class RetryPolicy(BaseModel):
    """Retry policy resolved at enqueue time and copied onto the job."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: Optional[int] = Field(default=30000, gt=0)
    jitter: bool = True


class Job(BaseModel):
    """One durable unit of work."""

    id: str
    name: str
    handler_key: str
    payload: Any = None
    tenant_id: Optional[str] = None
    priority: int = 5
    status: JobStatus = JobStatus.PENDING
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    max_retries: int = 3
    retry_delay_ms: int = 1000
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_ms: Optional[int] = 30000
    retry_jitter: bool = True
    timeout_ms: int = 30000
    error_message: Optional[str] = None
    locked_by: Optional[str] = None
    claim_token: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_ms=self.retry_delay_ms,
            backoff_multiplier=self.retry_backoff_multiplier,
            max_delay_ms=self.retry_max_delay_ms,
            jitter=self.retry_jitter,
        )

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


class ScheduleRequest(BaseModel):
    """Validated enqueue parameters."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    handler_key: Optional[str] = Field(default=None, min_length=1)
    payload: Any = None
    tenant_id: Optional[str] = None
    priority: int = Field(default=5, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    scheduled_at: Optional[datetime] = None
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout_ms: int = Field(default=30000, gt=0)


class HandlerResult(BaseModel):
    """Outcome reported by a handler.

    Use the constructors rather than building one by hand:

        HandlerResult.ok()               -> job completes
        HandlerResult.retryable("boom")  -> retried while attempts remain
        HandlerResult.fatal("bad input") -> dead-lettered immediately
    """

    success: bool
    error: Optional[str] = None
    retry: bool = False
    result: Any = None

    @classmethod
    def ok(cls, result: Any = None) -> "HandlerResult":
        return cls(success=True, result=result)

    @classmethod
    def retryable(cls, error: str) -> "HandlerResult":
        return cls(success=False, error=error, retry=True)

    @classmethod
    def fatal(cls, error: str) -> "HandlerResult":
        return cls(success=False, error=error, retry=False)


class JobOutcome(BaseModel):
    """What the execution pipeline did with one claimed job."""

    job_id: str
    status: JobStatus
    processed: bool = False
    error: bool = False
    dead_letter: bool = False
    error_message: Optional[str] = None


class BatchResult(BaseModel):
    """Aggregate counters for one processor invocation."""

    processed: int = 0
    errors: int = 0
    dead_letter: int = 0
    batches: int = 0
    halted: bool = False

    def add(self, outcome: JobOutcome) -> None:
        if outcome.processed:
            self.processed += 1
        if outcome.error:
            self.errors += 1
        if outcome.dead_letter:
            self.dead_letter += 1


class DeadLetterResult(BaseModel):
    requeued: int = 0
    deleted: int = 0


class DeadLetterPage(BaseModel):
    jobs: List[Job]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total


class JobStats(BaseModel):
    """Counts by status over the rolling window, plus mean run time."""

    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    dead_letter: int = 0
    avg_duration_ms: float = 0.0


class Config(BaseModel):
    """Enqueue defaults and dead-letter policy, persisted in the job store."""

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: int = Field(default=30000, gt=0)
    jitter: bool = True
    timeout_ms: int = Field(default=30000, gt=0)
    priority: int = Field(default=5, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    dead_letter_age_hours: float = Field(default=24.0, ge=0)

    def default_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay_ms=self.base_delay_ms,
            backoff_multiplier=self.backoff_multiplier,
            max_delay_ms=self.max_delay_ms,
            jitter=self.jitter,
        )
