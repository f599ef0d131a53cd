"""Job scheduling (enqueue) and read access to queued jobs."""

import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from .errors import JobNotFoundError, JobValidationError
from .logger import configure_logger
from .models import Config, Job, JobStatus, RetryPolicy, ScheduleRequest
from .recurring import RECURRING_KEY, recurring_marker
from .storage import JobStorage
from .utils import generate_job_id, utc_now

logger = configure_logger(__name__)

RetryPolicyInput = Union[RetryPolicy, Mapping[str, Any], None]


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for issue in error.errors():
        location = ".".join(str(p) for p in issue["loc"]) or "value"
        parts.append(f"{location}: {issue['msg']}")
    return "; ".join(parts)


class JobQueue:
    """Validates and inserts new jobs."""

    def __init__(self, storage: JobStorage):
        self.storage = storage

    def _resolve_retry_policy(
        self, config: Config, retry_policy: RetryPolicyInput
    ) -> Dict[str, Any]:
        """Merge caller supplied policy fields over the configured defaults."""
        merged = config.default_retry_policy().model_dump()
        if isinstance(retry_policy, RetryPolicy):
            merged.update(retry_policy.model_dump(exclude_unset=True))
        elif isinstance(retry_policy, Mapping):
            merged.update(retry_policy)
        elif retry_policy is not None:
            raise JobValidationError("retry_policy must be a RetryPolicy or a mapping")
        return merged

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
        """
        Insert a pending job and return its id.

        The handler does not need to be registered yet; it is looked up when
        the job is processed.

        Raises:
            JobValidationError: a parameter is invalid. Nothing was written.
            PersistenceError: the store rejected the insert.
        """
        config = self.storage.get_config()
        try:
            request = ScheduleRequest(
                name=name,
                handler_key=handler_key,
                payload=payload,
                tenant_id=tenant_id,
                priority=config.priority if priority is None else priority,
                scheduled_at=scheduled_at,
                retry_policy=self._resolve_retry_policy(config, retry_policy),
                timeout_ms=config.timeout_ms if timeout_ms is None else timeout_ms,
            )
        except ValidationError as e:
            raise JobValidationError(f"Invalid job {name!r}: {_format_validation_error(e)}") from e

        try:
            json.dumps(request.payload)
        except (TypeError, ValueError) as e:
            raise JobValidationError(f"Payload for job {name!r} is not JSON serializable: {e}") from e

        now = utc_now()
        policy = request.retry_policy
        job = Job(
            id=generate_job_id(),
            name=request.name,
            handler_key=request.handler_key or request.name,
            payload=request.payload,
            tenant_id=request.tenant_id,
            priority=request.priority,
            status=JobStatus.PENDING,
            scheduled_at=request.scheduled_at or now,
            retry_count=0,
            max_retries=policy.max_retries,
            retry_delay_ms=policy.base_delay_ms,
            retry_backoff_multiplier=policy.backoff_multiplier,
            retry_max_delay_ms=policy.max_delay_ms,
            retry_jitter=policy.jitter,
            timeout_ms=request.timeout_ms,
            created_at=now,
            updated_at=now,
        )

        self.storage.insert_job(job)
        logger.info(
            f"Scheduled job {job.id} ({job.name}) priority={job.priority}",
            extra={"job_id": job.id, "tenant_id": job.tenant_id},
        )
        return job.id

    def schedule_recurring(
        self,
        name: str,
        payload: Optional[Mapping[str, Any]],
        interval_minutes: float,
        **options: Any,
    ) -> str:
        """Schedule a job that is re-enqueued interval_minutes after each completion."""
        if payload is not None and not isinstance(payload, Mapping):
            raise JobValidationError("Recurring job payload must be an object")
        try:
            marker = recurring_marker(interval_minutes)
        except ValueError as e:
            raise JobValidationError(str(e)) from e

        recurring_payload = dict(payload or {})
        recurring_payload[RECURRING_KEY] = marker
        return self.schedule(name, recurring_payload, **options)

    def get_job(self, job_id: str) -> Job:
        job = self.storage.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
        tenant_id: Optional[str] = None,
    ) -> List[Job]:
        return self.storage.list_jobs(status=status, limit=limit, tenant_id=tenant_id)
