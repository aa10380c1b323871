"""Batch processor driving queued jobs to a terminal status."""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

import structlog

from willbatch.jobs.cancellation import CancellationToken, Delay, interruptible_sleep
from willbatch.jobs.errors import JobProcessingError, RecordRejected
from willbatch.jobs.lifecycle import JobLifecycle
from willbatch.jobs.models import Job, JobStatus, JobType, RowError, utc_now
from willbatch.jobs.store import JobStore
from willbatch.observability.metrics import MetricsRegistry
from willbatch.observability.tracing import clear_context, set_context
from willbatch.quality.validate import RecordValidator

LOGGER = structlog.get_logger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_BATCH_DELAY = 0.1


class RecordSink(Protocol):
    """Commits a validated record; raises ``RecordRejected`` to fail just that row."""

    def commit(self, job: Job, row: int, record: Mapping[str, Any]) -> None:
        ...


ValidatorFactory = Callable[[Job], RecordValidator]


class BatchProcessor:
    """Validates and commits a job's records in fixed-size batches.

    Progress is written through the store after every batch. Cancellation is
    checked before each batch, never inside one, so a batch that started
    always finishes and no record is left half-processed.
    """

    def __init__(
        self,
        store: JobStore,
        lifecycle: JobLifecycle,
        *,
        validators: Mapping[JobType, ValidatorFactory],
        sinks: Optional[Mapping[JobType, RecordSink]] = None,
        metrics: Optional[MetricsRegistry] = None,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        delay: Delay = interruptible_sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._validators = dict(validators)
        self._sinks = dict(sinks or {})
        self._metrics = metrics or MetricsRegistry()
        self._batch_delay = batch_delay
        self._delay = delay
        self._clock = clock

    async def run(self, job_id: str, *, batch_size: Optional[int] = None) -> Job:
        """Process one queued job to completion, cancellation or failure.

        Raises ``InvalidJobStateError`` when the job is not queued. Processing
        faults do not raise; they end the job as ``failed``.
        """
        token = self._lifecycle.begin(job_id, batch_size=batch_size)
        job = self._store.get_job(job_id)
        set_context(job_id=job.id, job_type=job.type.value)
        try:
            return await self._process(job, token)
        except asyncio.CancelledError:
            self._lifecycle.finalize(
                job_id,
                JobStatus.CANCELLED,
                message="Job run interrupted",
                expect=JobStatus.PROCESSING,
            )
            raise
        except JobProcessingError as exc:
            return self._fail(job_id, str(exc), retryable=False)
        except Exception as exc:
            LOGGER.exception("job_processing_error", job_id=job_id)
            return self._fail(job_id, f"{type(exc).__name__}: {exc}")
        finally:
            clear_context()

    async def _process(self, job: Job, token: CancellationToken) -> Job:
        records = self._load_records(job)
        validator = self._validator_for(job)
        sink = self._sinks.get(job.type)
        size = job.batch_size
        total = job.total_batches
        run_started = self._clock()

        for batch in range(1, total + 1):
            if batch > 1:
                await self._delay(self._batch_delay, token)
            if self._cancel_requested(job.id, token):
                return self._lifecycle.finalize(
                    job.id,
                    JobStatus.CANCELLED,
                    message=f"Job cancelled after {batch - 1}/{total} batches",
                    expect=JobStatus.PROCESSING,
                )

            start = (batch - 1) * size
            chunk = records[start:start + size]
            succeeded = 0
            errors: List[RowError] = []
            for offset, record in enumerate(chunk):
                row = start + offset + 1
                outcome = validator.validate(record)
                if not outcome.ok:
                    errors.append(RowError(row=row, reason=outcome.reason, data=dict(record)))
                    if outcome.duplicate:
                        self._metrics.incr("duplicates")
                    continue
                if sink is not None:
                    try:
                        sink.commit(job, row, record)
                    except RecordRejected as exc:
                        errors.append(RowError(row=row, reason=str(exc), data=dict(record)))
                        continue
                validator.remember(record)
                succeeded += 1

            job = self._store.append_errors(
                job.id,
                errors,
                expect=JobStatus.PROCESSING,
                action="record progress on",
                activity=f"Batch {batch}/{total} processed: {succeeded} succeeded, {len(errors)} failed",
                processed_records=job.processed_records + len(chunk),
                successful_records=job.successful_records + succeeded,
                failed_records=job.failed_records + len(errors),
                current_batch=batch,
                estimated_completion=self._estimate(run_started, batch, total),
            )
            self._metrics.incr("batches_processed")
            self._metrics.incr("records_processed", len(chunk))
            self._metrics.incr("records_succeeded", succeeded)
            self._metrics.incr("records_failed", len(errors))
            LOGGER.info(
                "batch_processed",
                job_id=job.id,
                batch=batch,
                total_batches=total,
                succeeded=succeeded,
                failed=len(errors),
            )

        return self._lifecycle.finalize(
            job.id,
            JobStatus.COMPLETE,
            message=f"Job completed: {job.successful_records} successful, {job.failed_records} failed",
            expect=JobStatus.PROCESSING,
        )

    def _load_records(self, job: Job) -> List[Dict[str, Any]]:
        data = job.data
        if not isinstance(data, list):
            raise JobProcessingError("source data is missing or unreadable")
        if len(data) != job.total_records:
            raise JobProcessingError(
                f"source data holds {len(data)} records, expected {job.total_records}"
            )
        for index, record in enumerate(data, start=1):
            if not isinstance(record, Mapping):
                raise JobProcessingError(f"record {index} is not a field mapping")
        return data

    def _validator_for(self, job: Job) -> RecordValidator:
        factory = self._validators.get(job.type)
        if factory is None:
            raise JobProcessingError(f"no validation policy for job type {job.type.value}")
        return factory(job)

    def _cancel_requested(self, job_id: str, token: CancellationToken) -> bool:
        if token.cancelled:
            return True
        # A cancel issued by another process only reaches us through the store.
        return self._store.get_job(job_id).cancel_requested

    def _estimate(self, run_started: datetime, batch: int, total: int) -> Optional[datetime]:
        if batch >= total:
            return None
        now = self._clock()
        per_batch = (now - run_started) / batch
        return now + per_batch * (total - batch)

    def _fail(self, job_id: str, reason: str, *, retryable: bool = True) -> Job:
        LOGGER.warning("job_failed", job_id=job_id, reason=reason)
        return self._lifecycle.finalize(
            job_id,
            JobStatus.FAILED,
            reason=reason,
            message=f"Job failed: {reason}",
            retryable=retryable,
            expect=JobStatus.PROCESSING,
        )
