"""Facade wiring the job store, lifecycle and processor together."""
from __future__ import annotations

import asyncio
from typing import Dict, List, Mapping, Optional

import structlog

from willbatch.jobs.cancellation import Delay, interruptible_sleep
from willbatch.jobs.errors import InvalidJobStateError
from willbatch.jobs.lifecycle import JobLifecycle
from willbatch.jobs.models import Job, JobStatus, JobType
from willbatch.jobs.monitor import JobMonitor
from willbatch.jobs.processor import BatchProcessor, RecordSink, ValidatorFactory
from willbatch.jobs.settings import JobSettings
from willbatch.jobs.store import JobStore
from willbatch.jobs.submission import JobSubmission
from willbatch.observability.metrics import MetricsRegistry, time_job_run
from willbatch.observability.tracing import span
from willbatch.quality.validate import SchemaRegistry, SearchRecordValidator, WillRecordValidator
from willbatch.storage.layout import DataLayout
from willbatch.storage.registry import SearchRegistry, WillRegistry

LOGGER = structlog.get_logger(__name__)


class JobService:
    """Entry point for submitting, running and steering bulk jobs."""

    def __init__(
        self,
        store: JobStore,
        *,
        validators: Mapping[JobType, ValidatorFactory],
        sinks: Optional[Mapping[JobType, RecordSink]] = None,
        settings: Optional[JobSettings] = None,
        metrics: Optional[MetricsRegistry] = None,
        delay: Delay = interruptible_sleep,
    ) -> None:
        self.settings = settings or JobSettings()
        self.store = store
        self.metrics = metrics or MetricsRegistry()
        self.lifecycle = JobLifecycle(store, metrics=self.metrics)
        self.processor = BatchProcessor(
            store,
            self.lifecycle,
            validators=validators,
            sinks=sinks,
            metrics=self.metrics,
            batch_delay=self.settings.batch_delay,
            delay=delay,
        )
        self.monitor = JobMonitor(
            store,
            interval=self.settings.poll_interval,
            preview_limit=self.settings.preview_limit,
        )
        self._tasks: Dict[str, asyncio.Task] = {}

    def submit(self, submission: JobSubmission, *, batch_size: Optional[int] = None) -> Job:
        job = self.store.create_job(submission, batch_size=batch_size or self.settings.batch_size)
        self.metrics.incr("jobs_submitted")
        return job

    async def run(self, job_id: str, *, batch_size: Optional[int] = None) -> Job:
        """Process one queued job in the current task."""
        with span(name="job_run", job_id=job_id), time_job_run(self.metrics, job_id) as timing:
            try:
                job = await self.processor.run(job_id, batch_size=batch_size)
            except asyncio.CancelledError:
                timing.status = JobStatus.CANCELLED.value
                raise
            timing.status = job.status.value
            return job

    def start(self, job_id: str, *, batch_size: Optional[int] = None) -> asyncio.Task:
        """Schedule a job on the running loop so it proceeds alongside others."""
        task = asyncio.create_task(self.run(job_id, batch_size=batch_size), name=f"job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return task

    async def run_pending(self) -> List[Job]:
        """Run every queued job concurrently and return the finished jobs."""
        queued = self.store.list_jobs(JobStatus.QUEUED)
        tasks = [self.start(job.id) for job in queued]
        finished: List[Job] = []
        for job, outcome in zip(queued, await asyncio.gather(*tasks, return_exceptions=True)):
            if isinstance(outcome, InvalidJobStateError):
                LOGGER.info("job_already_claimed", job_id=job.id, status=outcome.status)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            finished.append(outcome)
        return finished

    async def wait_all(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def cancel(self, job_id: str) -> Job:
        return self.lifecycle.cancel(job_id)

    def retry(self, job_id: str, *, batch_size: Optional[int] = None) -> Job:
        return self.lifecycle.retry(job_id, batch_size=batch_size)

    def get_job(self, job_id: str) -> Job:
        return self.store.get_job(job_id)

    def list_jobs(self, status=None) -> List[Job]:
        return self.store.list_jobs(status)

    def cleanup(self) -> int:
        return self.store.cleanup_old_jobs(days=self.settings.retention_days)


def build_service(
    settings: JobSettings,
    *,
    metrics: Optional[MetricsRegistry] = None,
    delay: Delay = interruptible_sleep,
) -> JobService:
    """Assemble a service backed by files under the configured data root."""
    layout = DataLayout(settings.data_root)
    schemas = SchemaRegistry()
    wills = WillRegistry(layout.wills_file, schemas=schemas)
    searches = SearchRegistry(layout.searches_file, schemas=schemas)
    validators: Dict[JobType, ValidatorFactory] = {
        JobType.WILL_UPLOAD: lambda job: WillRecordValidator(registry=schemas, known=wills.contains),
        JobType.SEARCH_BATCH: lambda job: SearchRecordValidator(registry=schemas),
    }
    return JobService(
        JobStore(layout.jobs_file),
        validators=validators,
        sinks={JobType.WILL_UPLOAD: wills, JobType.SEARCH_BATCH: searches},
        settings=settings,
        metrics=metrics,
        delay=delay,
    )
