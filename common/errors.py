from typing import Optional


class JobError(Exception):
    """Base class for every error the job pipeline reports."""


class ValidationError(JobError):
    """Enqueue request is missing or malformed; no job was created."""


class NotFound(JobError):
    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidStateTransition(JobError):
    def __init__(self, job_id: str, current: Optional[str], target: Optional[str], reason: str = ""):
        message = f"Job {job_id}: cannot move from {current} to {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.job_id = job_id
        self.current = current
        self.target = target


class StaleClaim(InvalidStateTransition):
    """The writer's claim token no longer owns the job; its write is discarded."""


class NotReady(JobError):
    def __init__(self, job_id: str, state: str):
        super().__init__(f"Job {job_id} not completed yet (status: {state})")
        self.job_id = job_id
        self.state = state


class JobFailed(JobError):
    def __init__(self, job_id: str, error: Optional[str]):
        super().__init__(f"Job {job_id} failed: {error}")
        self.job_id = job_id
        self.error = error


class StoreUnavailable(JobError):
    """The durable store could not be reached or stayed contended."""


class VersionConflict(JobError):
    """A conditional write lost against a concurrent writer."""

    def __init__(self, key: str):
        super().__init__(f"Concurrent modification of {key}")
        self.key = key

