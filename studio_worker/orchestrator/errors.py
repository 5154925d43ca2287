"""
Error taxonomy for the generation-job orchestrator.

Only SubmissionError, ProviderFailure, JobTimeout and DependencyCancelled are
terminal failures a caller ever sees. TransientPollError stays inside the
scheduler unless it exhausts its retry ceiling (then it surfaces as JobTimeout).
A job failed because its worker crashed surfaces as a plain OrchestratorError.
"""

from typing import Optional

from .models import ErrorKind, JobError


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class SubmissionError(OrchestratorError):
    """The provider rejected the request; no provider task exists."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientPollError(OrchestratorError):
    """Network / 429 / 5xx while polling. Retried by the scheduler."""


class ProviderFailure(OrchestratorError):
    """The provider reported that the job itself failed."""


class JobTimeout(OrchestratorError):
    """Attempt budget (or transient-retry ceiling) exhausted."""


class DependencyCancelled(OrchestratorError):
    """Cancelled because a predecessor segment did not succeed."""


class JobCancelled(OrchestratorError):
    """Cancelled by an explicit timeline cancel."""


class InsufficientBalance(OrchestratorError):
    def __init__(self, owner_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient tokens for {owner_id}: {required} required, {available} available"
        )
        self.owner_id = owner_id
        self.required = required
        self.available = available


class JobNotFound(OrchestratorError):
    pass


class TimelineNotFound(OrchestratorError):
    pass


class InvalidTimeline(OrchestratorError):
    pass


_TERMINAL_ERRORS = {
    ErrorKind.SUBMISSION: SubmissionError,
    ErrorKind.PROVIDER_FAILURE: ProviderFailure,
    ErrorKind.TIMEOUT: JobTimeout,
    ErrorKind.DEPENDENCY_CANCELLED: DependencyCancelled,
    ErrorKind.CANCELLED: JobCancelled,
}


def error_for(job_id: str, error: Optional[JobError]) -> OrchestratorError:
    """Exception matching a terminal job's recorded error."""
    if error is None:
        return OrchestratorError(f"Job {job_id} did not succeed")
    exc_class = _TERMINAL_ERRORS.get(error.kind, OrchestratorError)
    return exc_class(f"Job {job_id}: {error.message}")
