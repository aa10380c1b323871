import asyncio

import pytest

from conftest import will_records, will_submission
from willbatch.jobs.errors import InvalidJobStateError, JobNotFoundError
from willbatch.jobs.lifecycle import JobLifecycle, pending_records
from willbatch.jobs.models import JobStatus, RowError
from willbatch.jobs.service import build_service
from willbatch.jobs.store import JobStore


def test_cancel_queued_job_is_immediate(service):
    job = service.submit(will_submission(will_records(5)))

    cancelled = service.cancel(job.id)

    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.completed_at is not None
    assert cancelled.can_cancel is False
    assert cancelled.can_retry is True
    assert cancelled.activity_log[-1].message == "Job cancelled by user"
    with pytest.raises(InvalidJobStateError):
        asyncio.run(service.run(job.id))


def test_cancel_terminal_job_is_rejected(service):
    job = service.submit(will_submission(will_records(2)))
    asyncio.run(service.run(job.id))

    with pytest.raises(InvalidJobStateError) as excinfo:
        service.cancel(job.id)
    assert excinfo.value.status == "complete"
    assert service.get_job(job.id).status is JobStatus.COMPLETE


def test_unknown_job_raises_not_found(service):
    with pytest.raises(JobNotFoundError):
        service.cancel("JOB_999")
    with pytest.raises(JobNotFoundError):
        service.get_job("JOB_999")


def test_finalize_twice_is_rejected():
    store = JobStore()
    lifecycle = JobLifecycle(store)
    job = store.create_job(will_submission(will_records(2)), batch_size=10)
    lifecycle.begin(job.id)
    lifecycle.finalize(job.id, JobStatus.FAILED, reason="disk full")

    with pytest.raises(InvalidJobStateError):
        lifecycle.finalize(job.id, JobStatus.COMPLETE)
    assert store.get_job(job.id).status is JobStatus.FAILED


def test_finalize_requires_terminal_status():
    store = JobStore()
    lifecycle = JobLifecycle(store)
    job = store.create_job(will_submission(will_records(1)), batch_size=10)

    with pytest.raises(ValueError):
        lifecycle.finalize(job.id, JobStatus.PROCESSING)


def test_begin_claims_once():
    store = JobStore()
    lifecycle = JobLifecycle(store)
    job = store.create_job(will_submission(will_records(1)), batch_size=10)

    token = lifecycle.begin(job.id)

    assert token.job_id == job.id
    assert lifecycle.token_for(job.id) is token
    assert store.get_job(job.id).status is JobStatus.PROCESSING
    with pytest.raises(InvalidJobStateError):
        lifecycle.begin(job.id)


def test_retry_resubmits_failed_and_unprocessed_rows(settings):
    service = None

    async def cancel_after_two_batches(seconds, token):
        if service.get_job(token.job_id).current_batch == 2:
            service.cancel(token.job_id)
        await asyncio.sleep(0)

    service = build_service(settings, delay=cancel_after_two_batches)
    records = will_records(25)
    records[16]["willLocation"] = "Under the bed"
    job = service.submit(will_submission(records))
    cancelled = asyncio.run(service.run(job.id))
    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.successful_records == 19

    retried = service.retry(job.id)

    assert retried.id != job.id
    assert retried.status is JobStatus.QUEUED
    assert retried.retry_of == job.id
    assert retried.total_records == 6
    assert retried.errors == []
    assert retried.data[0]["testatorName"] == "Testator 17"
    assert [record["testatorName"] for record in retried.data[1:]] == [f"Testator {i}" for i in range(21, 26)]
    assert retried.activity_log[-1].message == f"Retry of {job.id}: 6 records (1 failed, 5 unprocessed)"

    original = service.get_job(job.id)
    assert original.can_retry is False
    assert original.activity_log[-1].message == f"Retried as {retried.id}"
    with pytest.raises(InvalidJobStateError):
        service.retry(job.id)


def test_retry_of_completed_job_is_rejected(service):
    job = service.submit(will_submission(will_records(3)))
    asyncio.run(service.run(job.id))

    with pytest.raises(InvalidJobStateError):
        service.retry(job.id)


def test_retried_job_runs_to_completion(settings):
    service = None

    async def cancel_once(seconds, token):
        job = service.get_job(token.job_id)
        if job.retry_of is None and job.current_batch == 1:
            service.cancel(token.job_id)
        await asyncio.sleep(0)

    service = build_service(settings, delay=cancel_once)
    job = service.submit(will_submission(will_records(25)))
    asyncio.run(service.run(job.id))

    retried = service.retry(job.id)
    finished = asyncio.run(service.run(retried.id))

    assert finished.status is JobStatus.COMPLETE
    assert finished.successful_records == 15
    assert finished.failed_records == 0
    assert service.metrics.get("jobs_retried") == 1


def test_pending_records_orders_failures_before_tail():
    store = JobStore()
    job = store.create_job(will_submission(will_records(6)), batch_size=2)
    store.update_job(
        job.id,
        errors=[RowError(row=3, reason="bad postcode", data={})],
        processed_records=4,
        successful_records=3,
        failed_records=1,
    )

    names = [record["testatorName"] for record in pending_records(store.get_job(job.id))]

    assert names == ["Testator 3", "Testator 5", "Testator 6"]
