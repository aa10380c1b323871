"""State machine governing job status transitions."""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from willbatch.jobs.cancellation import CancellationToken
from willbatch.jobs.errors import InvalidJobStateError
from willbatch.jobs.models import (
    ACTIVE_STATUSES,
    Job,
    JobStatus,
    format_duration,
    total_batches_for,
    utc_now,
)
from willbatch.jobs.store import JobStore
from willbatch.jobs.submission import JobSubmission
from willbatch.observability.metrics import MetricsRegistry

LOGGER = structlog.get_logger(__name__)

RETRYABLE_STATUSES = frozenset({JobStatus.FAILED, JobStatus.CANCELLED})


def pending_records(job: Job) -> List[dict]:
    """Return the records a retry should resubmit.

    Rows that failed come first, in row order, followed by the tail the run
    never reached. Rows already committed successfully are left out.
    """
    if not isinstance(job.data, list):
        return []
    failed_rows = sorted({error.row for error in job.errors})
    failed = [job.data[row - 1] for row in failed_rows if 0 < row <= len(job.data)]
    return failed + job.data[job.processed_records:]


class JobLifecycle:
    """Owns status transitions and the per-job cancellation tokens.

    ``queued -> processing -> {complete, failed, cancelled}``. Terminal states
    have no outgoing transitions; every illegal request raises
    ``InvalidJobStateError`` before anything is written.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        metrics: Optional[MetricsRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._metrics = metrics or MetricsRegistry()
        self._clock = clock
        self._tokens: Dict[str, CancellationToken] = {}

    def token_for(self, job_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(job_id)

    def begin(self, job_id: str, *, batch_size: Optional[int] = None) -> CancellationToken:
        """Claim a queued job for processing and hand out its token.

        This is the only ``queued -> processing`` transition, so a second
        claim on the same job fails. A ``batch_size`` re-batches the job as
        part of the same write; nothing has been processed yet at this point.
        """
        changes: Dict[str, object] = {"status": JobStatus.PROCESSING}
        if batch_size is not None:
            job = self._store.get_job(job_id)
            changes["batch_size"] = batch_size
            changes["total_batches"] = total_batches_for(job.total_records, batch_size)
        self._store.update_job(
            job_id,
            expect=JobStatus.QUEUED,
            action="run",
            activity="Processing started",
            **changes,
        )
        token = CancellationToken(job_id)
        self._tokens[job_id] = token
        LOGGER.info("job_started", job_id=job_id)
        return token

    def cancel(self, job_id: str) -> Job:
        """Cancel a queued job outright, or request cancellation of a running one."""
        job = self._store.get_job(job_id)
        if job.status is JobStatus.QUEUED:
            try:
                return self.finalize(
                    job_id,
                    JobStatus.CANCELLED,
                    message="Job cancelled by user",
                    expect=JobStatus.QUEUED,
                )
            except InvalidJobStateError as exc:
                # Claimed by a processor in the meantime.
                if exc.status != JobStatus.PROCESSING.value:
                    raise
        elif job.status is not JobStatus.PROCESSING:
            raise InvalidJobStateError(job_id, job.status.value, "cancel")

        job = self._store.get_job(job_id)
        if not job.cancel_requested:
            job = self._store.update_job(
                job_id,
                expect=JobStatus.PROCESSING,
                action="cancel",
                cancel_requested=True,
                activity="Cancellation requested by user",
            )
        token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        LOGGER.info("job_cancel_requested", job_id=job_id)
        return job

    def finalize(
        self,
        job_id: str,
        status: JobStatus,
        *,
        reason: Optional[str] = None,
        message: Optional[str] = None,
        retryable: bool = True,
        expect=ACTIVE_STATUSES,
    ) -> Job:
        """Move an active job into a terminal status, exactly once.

        ``completed_at`` and ``duration`` are only ever written here.
        Finalizing a job that is already terminal raises.
        """
        status = JobStatus(status)
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status")
        job = self._store.get_job(job_id)
        now = self._clock()
        changes: Dict[str, object] = {
            "status": status,
            "completed_at": now,
            "duration": format_duration(job.started_at, now),
            "estimated_completion": None,
            "can_cancel": False,
            "can_retry": (
                status in RETRYABLE_STATUSES
                and retryable
                and isinstance(job.data, list)
                and job.remaining_records > 0
            ),
        }
        if status is JobStatus.FAILED:
            changes["failure_reason"] = reason or "Unknown processing error"
        if status is JobStatus.COMPLETE:
            changes["data"] = None
        job = self._store.update_job(
            job_id,
            expect=expect,
            action=f"finalize as {status.value}",
            activity=message,
            **changes,
        )
        self._tokens.pop(job_id, None)
        self._metrics.incr(f"jobs_{status.value}")
        LOGGER.info(
            "job_finalized",
            job_id=job_id,
            status=status.value,
            processed=job.processed_records,
            failed=job.failed_records,
            duration=job.duration,
        )
        return job

    def retry(self, job_id: str, *, batch_size: Optional[int] = None) -> Job:
        """Queue a new job for the rows of a failed or cancelled job that did not succeed."""
        job = self._store.get_job(job_id)
        if job.status not in RETRYABLE_STATUSES or not job.can_retry:
            raise InvalidJobStateError(job_id, job.status.value, "retry")
        records = pending_records(job)
        failed_count = len({error.row for error in job.errors})
        submission = JobSubmission(
            type=job.type,
            firm_id=job.firm_id,
            firm_name=job.firm_name,
            user_id=job.user_id,
            user_name=job.user_name,
            file_name=job.file_name,
            records=records,
        )
        retried = self._store.create_job(submission, batch_size=batch_size or job.batch_size, retry_of=job.id)
        retried = self._store.add_activity(
            retried.id,
            f"Retry of {job.id}: {len(records)} records "
            f"({failed_count} failed, {len(records) - failed_count} unprocessed)",
        )
        self._store.update_job(job.id, can_retry=False, activity=f"Retried as {retried.id}")
        self._metrics.incr("jobs_retried")
        LOGGER.info("job_retried", job_id=job.id, retry_job_id=retried.id, records=len(records))
        return retried
