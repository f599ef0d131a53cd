"""Exception hierarchy for the job engine."""


class JobEngineError(Exception):
    """Base class for all jobctl errors."""


class JobValidationError(JobEngineError, ValueError):
    """Enqueue parameters were rejected; no job was created."""


class PersistenceError(JobEngineError):
    """The job store could not be read or written."""


class JobNotFoundError(JobEngineError):
    """No job exists with the requested id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class HandlerNotFoundError(JobEngineError):
    """No handler is registered for a job's handler key."""

    def __init__(self, handler_key: str):
        super().__init__(f"No handler registered for job type: {handler_key}")
        self.handler_key = handler_key


class DuplicateHandlerError(JobEngineError):
    """A handler key was registered twice."""

    def __init__(self, handler_key: str):
        super().__init__(f"Handler already registered for job type: {handler_key}")
        self.handler_key = handler_key


class JobTimeoutError(JobEngineError):
    """A handler did not finish before its deadline."""

    def __init__(self, timeout_ms: int):
        super().__init__("timeout")
        self.timeout_ms = timeout_ms
