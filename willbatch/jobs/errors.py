"""Exception taxonomy for job operations."""
from __future__ import annotations


class JobError(Exception):
    """Base class for errors surfaced by the job subsystem."""


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(JobError):
    """Raised when a transition is not legal from the job's current status."""

    def __init__(self, job_id: str, status: str, action: str) -> None:
        super().__init__(f"cannot {action} job {job_id} while {status}")
        self.job_id = job_id
        self.status = status
        self.action = action


class JobProcessingError(JobError):
    """Unrecoverable, job-level fault such as unreadable source data."""


class RecordRejected(Exception):
    """Raised by a sink to reject a single record as a per-row failure."""
