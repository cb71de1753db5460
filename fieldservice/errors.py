"""
Typed domain errors for the dispatch engine.

Each error carries the HTTP status code the transport layer answers with.
The façade turns them into ``False``/``None`` returns; only the HTTP layer
and direct registry callers see the exceptions.
"""

from fieldservice.models import JobStatus


class FieldServiceError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class JobNotFound(FieldServiceError):
    status_code = 404

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class UnauthorizedTechnician(FieldServiceError):
    """Status change attempted by someone other than the assignee (403)."""

    status_code = 403

    def __init__(self, job_id: str, employee_id: str | None):
        self.job_id = job_id
        self.employee_id = employee_id
        who = employee_id or "an anonymous caller"
        super().__init__(f"Job {job_id} is not assigned to {who}")


class InvalidTransition(FieldServiceError):
    """Status change that skips or reverses the job lifecycle (409)."""

    status_code = 409

    def __init__(
        self,
        job_id: str,
        current: JobStatus,
        requested: JobStatus,
        reason: str | None = None,
    ):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        detail = f"Job {job_id} cannot move from {current} to {requested}"
        if reason:
            detail = f"{detail}: {reason}"
        super().__init__(detail)


class JobClosed(FieldServiceError):
    """Change to a completed or cancelled job other than its notes (409)."""

    status_code = 409

    def __init__(self, job_id: str, status: JobStatus):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is {status} and can no longer change")
