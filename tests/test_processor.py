import asyncio
import time

import pytest

from conftest import will_record, will_records, will_submission
from willbatch.jobs.cancellation import CancellationToken, interruptible_sleep, no_delay
from willbatch.jobs.errors import InvalidJobStateError, RecordRejected
from willbatch.jobs.lifecycle import JobLifecycle
from willbatch.jobs.models import JobStatus, JobType
from willbatch.jobs.processor import BatchProcessor
from willbatch.jobs.service import build_service
from willbatch.jobs.store import JobStore
from willbatch.quality.validate import WillRecordValidator


def test_batches_progress_and_row_failure(service):
    records = will_records(25)
    records[16]["postcode"] = "NOT A POSTCODE"
    job = service.submit(will_submission(records))
    assert job.status is JobStatus.QUEUED
    assert job.total_batches == 3

    finished = asyncio.run(service.run(job.id))

    assert finished.status is JobStatus.COMPLETE
    assert finished.processed_records == 25
    assert finished.successful_records == 24
    assert finished.failed_records == 1
    assert finished.current_batch == 3
    assert [error.row for error in finished.errors] == [17]
    assert "postcode" in finished.errors[0].reason
    assert finished.errors[0].data["testatorName"] == "Testator 17"
    assert finished.data is None
    assert finished.can_cancel is False
    assert finished.can_retry is False
    assert finished.completed_at is not None
    assert finished.duration.endswith("s")
    messages = [entry.message for entry in finished.activity_log]
    assert messages[0] == "Job created: wills.csv (25 records)"
    assert "Batch 1/3 processed: 10 succeeded, 0 failed" in messages
    assert "Batch 2/3 processed: 9 succeeded, 1 failed" in messages
    assert "Batch 3/3 processed: 5 succeeded, 0 failed" in messages
    assert messages[-1] == "Job completed: 24 successful, 1 failed"
    assert service.metrics.get("batches_processed") == 3
    assert service.metrics.get("jobs_complete") == 1


def test_progress_is_visible_between_batches(settings):
    seen = []
    service = None

    async def observe(seconds, token):
        job = service.get_job(token.job_id)
        seen.append((job.current_batch, job.processed_records, job.status))
        await asyncio.sleep(0)

    service = build_service(settings, delay=observe)
    job = service.submit(will_submission(will_records(25)))
    asyncio.run(service.run(job.id))

    assert seen == [(1, 10, JobStatus.PROCESSING), (2, 20, JobStatus.PROCESSING)]


def test_zero_record_job_completes_without_batches(service):
    job = service.submit(will_submission([], file_name="empty.csv"))
    assert job.total_batches == 0

    finished = asyncio.run(service.run(job.id))

    assert finished.status is JobStatus.COMPLETE
    assert finished.processed_records == 0
    assert finished.current_batch == 0
    assert finished.activity_log[-1].message == "Job completed: 0 successful, 0 failed"


def test_unreadable_source_fails_without_retry(service):
    job = service.submit(will_submission(will_records(3)))
    service.store.update_job(job.id, data=None)

    finished = asyncio.run(service.run(job.id))

    assert finished.status is JobStatus.FAILED
    assert finished.failure_reason == "source data is missing or unreadable"
    assert finished.can_retry is False
    assert finished.processed_records == 0


def test_sink_fault_fails_job_and_keeps_progress():
    store = JobStore()
    lifecycle = JobLifecycle(store)

    class ExplodingSink:
        def __init__(self):
            self.committed = []

        def commit(self, job, row, record):
            if row == 15:
                raise RuntimeError("registry offline")
            self.committed.append(row)

    sink = ExplodingSink()
    processor = BatchProcessor(
        store,
        lifecycle,
        validators={JobType.WILL_UPLOAD: lambda job: WillRecordValidator()},
        sinks={JobType.WILL_UPLOAD: sink},
        delay=no_delay,
    )
    job = store.create_job(will_submission(will_records(25)), batch_size=10)

    finished = asyncio.run(processor.run(job.id))

    assert finished.status is JobStatus.FAILED
    assert finished.failure_reason == "RuntimeError: registry offline"
    assert finished.processed_records == 10
    assert finished.successful_records == 10
    assert finished.can_retry is True
    assert finished.data is not None


def test_rejected_record_is_a_row_failure():
    store = JobStore()

    class PickySink:
        def commit(self, job, row, record):
            if row == 2:
                raise RecordRejected("Firm has no credits left")

    processor = BatchProcessor(
        store,
        JobLifecycle(store),
        validators={JobType.WILL_UPLOAD: lambda job: WillRecordValidator()},
        sinks={JobType.WILL_UPLOAD: PickySink()},
        delay=no_delay,
    )
    job = store.create_job(will_submission(will_records(3)), batch_size=10)

    finished = asyncio.run(processor.run(job.id))

    assert finished.status is JobStatus.COMPLETE
    assert finished.successful_records == 2
    assert [(error.row, error.reason) for error in finished.errors] == [(2, "Firm has no credits left")]


def test_duplicate_rows_are_reported(service):
    records = will_records(4)
    records.append(dict(records[0]))
    job = service.submit(will_submission(records))

    finished = asyncio.run(service.run(job.id))

    assert finished.failed_records == 1
    assert finished.errors[0].row == 5
    assert finished.errors[0].reason == "Duplicate of an earlier row in this upload"

    again = service.submit(will_submission([will_record(2)], file_name="again.csv"))
    second = asyncio.run(service.run(again.id))
    assert second.errors[0].reason == "Will already registered for this testator and date of birth"
    assert service.metrics.get("duplicates") == 2


def test_missing_policy_fails_job():
    store = JobStore()
    processor = BatchProcessor(store, JobLifecycle(store), validators={}, delay=no_delay)
    job = store.create_job(will_submission(will_records(2)), batch_size=10)

    finished = asyncio.run(processor.run(job.id))

    assert finished.status is JobStatus.FAILED
    assert finished.failure_reason == "no validation policy for job type will-upload"


def test_running_twice_is_rejected(service):
    job = service.submit(will_submission(will_records(2)))
    asyncio.run(service.run(job.id))

    with pytest.raises(InvalidJobStateError):
        asyncio.run(service.run(job.id))


def test_cancel_between_batches(settings):
    service = None

    async def cancel_before_second_batch(seconds, token):
        if service.get_job(token.job_id).current_batch == 1:
            service.cancel(token.job_id)
        await asyncio.sleep(0)

    service = build_service(settings, delay=cancel_before_second_batch)
    job = service.submit(will_submission(will_records(25)))

    finished = asyncio.run(service.run(job.id))

    assert finished.status is JobStatus.CANCELLED
    assert finished.processed_records == 10
    assert finished.current_batch == 1
    assert finished.can_cancel is False
    assert finished.can_retry is True
    messages = [entry.message for entry in finished.activity_log]
    assert "Cancellation requested by user" in messages
    assert messages[-1] == "Job cancelled after 1/3 batches"
    assert service.metrics.get("jobs_cancelled") == 1


def test_cancel_from_another_store_instance(settings):
    service = None

    async def cancel_elsewhere(seconds, token):
        other = JobLifecycle(JobStore(service.store.path))
        other.cancel(token.job_id)
        await asyncio.sleep(0)

    service = build_service(settings, delay=cancel_elsewhere)
    job = service.submit(will_submission(will_records(15)))

    finished = asyncio.run(service.run(job.id))

    assert finished.status is JobStatus.CANCELLED
    assert finished.cancel_requested is True
    assert finished.processed_records == 10


def test_task_cancellation_finalizes_job(settings):
    async def scenario():
        entered = asyncio.Event()

        async def stall(seconds, token):
            entered.set()
            await asyncio.sleep(10)

        service = build_service(settings, delay=stall)
        job = service.submit(will_submission(will_records(15)))
        task = service.start(job.id)
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return service.get_job(job.id)

    job = asyncio.run(scenario())

    assert job.status is JobStatus.CANCELLED
    assert job.activity_log[-1].message == "Job run interrupted"


def test_batch_size_override_rebatches(service):
    job = service.submit(will_submission(will_records(25)))

    finished = asyncio.run(service.run(job.id, batch_size=5))

    assert finished.batch_size == 5
    assert finished.total_batches == 5
    assert finished.current_batch == 5


def test_interruptible_sleep_returns_on_cancel():
    async def scenario():
        token = CancellationToken("JOB_001")
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        start = time.perf_counter()
        await interruptible_sleep(10, token)
        return time.perf_counter() - start

    assert asyncio.run(scenario()) < 1
