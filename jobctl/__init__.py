"""jobctl - durable background job engine."""

from .engine import JobEngine
from .errors import (
    DuplicateHandlerError,
    HandlerNotFoundError,
    JobEngineError,
    JobNotFoundError,
    JobTimeoutError,
    JobValidationError,
    PersistenceError,
)
from .models import (
    BatchResult,
    Config,
    DeadLetterPage,
    DeadLetterResult,
    HandlerResult,
    Job,
    JobStats,
    JobStatus,
    RetryPolicy,
)
from .pipeline import JobContext
from .registry import HandlerRegistry, load_registry
from .settings import Settings
from .storage import JobStorage
from .telemetry import JobMetrics
from .worker import Worker

__version__ = "1.0.0"

__all__ = [
    "BatchResult",
    "Config",
    "DeadLetterPage",
    "DeadLetterResult",
    "DuplicateHandlerError",
    "HandlerNotFoundError",
    "HandlerRegistry",
    "HandlerResult",
    "Job",
    "JobContext",
    "JobEngine",
    "JobEngineError",
    "JobMetrics",
    "JobNotFoundError",
    "JobStats",
    "JobStatus",
    "JobStorage",
    "JobTimeoutError",
    "JobValidationError",
    "PersistenceError",
    "RetryPolicy",
    "Settings",
    "Worker",
    "load_registry",
]
