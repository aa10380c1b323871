"""Job store with JSON file persistence shared across processes."""
from __future__ import annotations

import contextlib
import copy
import threading
from dataclasses import fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

import orjson
import structlog
from filelock import FileLock

from willbatch.jobs.errors import InvalidJobStateError, JobNotFoundError
from willbatch.jobs.models import (
    ACTIVE_STATUSES,
    ActivityEntry,
    Job,
    JobStatus,
    RowError,
    total_batches_for,
    utc_now,
)
from willbatch.jobs.submission import JobSubmission

LOGGER = structlog.get_logger(__name__)

_STORE_SCHEMA_VERSION = 1

IMMUTABLE_FIELDS = frozenset({
    "id",
    "type",
    "firm_id",
    "user_id",
    "file_name",
    "total_records",
    "started_at",
    "retry_of",
})
_APPEND_ONLY_FIELDS = frozenset({"errors", "activity_log"})
_JOB_FIELDS = frozenset(item.name for item in fields(Job))

StatusFilter = Union[JobStatus, str, Iterable[Union[JobStatus, str]], None]


def _status_set(status: StatusFilter) -> Optional[set]:
    if status is None:
        return None
    if isinstance(status, (JobStatus, str)):
        return {JobStatus(status)}
    return {JobStatus(item) for item in status}


class JobStore:
    """Single source of truth for job records.

    With no ``path`` the store lives in memory. With a path, the file is
    re-read whenever another writer changed it and rewritten after every
    mutation, so a second process (for example the CLI issuing a cancel)
    observes and contributes to the same state. Every operation runs under
    one re-entrant lock. Mutations also hold ``<path>.lock`` from the
    re-read through the rewrite, so writers in other processes cannot
    interleave and drop each other's changes.
    """

    def __init__(self, path: Optional[Path] = None, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._path = path
        self._clock = clock
        self._lock = threading.RLock()
        self._file_lock: Optional[FileLock] = None
        self._jobs: Dict[str, Job] = {}
        self._next_seq = 1
        self._signature: Optional[tuple] = None
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._file_lock = FileLock(str(path) + ".lock")

    @property
    def path(self) -> Optional[Path]:
        return self._path

    @contextlib.contextmanager
    def _exclusive(self):
        with self._lock:
            if self._file_lock is None:
                yield
                return
            with self._file_lock:
                yield

    def _refresh(self) -> None:
        if self._path is None or not self._path.exists():
            return
        stat = self._path.stat()
        # Writes replace the file, so the inode changes even within one mtime tick.
        signature = (stat.st_ino, stat.st_mtime_ns)
        if signature == self._signature:
            return
        try:
            payload = orjson.loads(self._path.read_bytes())
        except orjson.JSONDecodeError:
            LOGGER.warning("job_store_unreadable", path=str(self._path))
            return
        if payload.get("version") != _STORE_SCHEMA_VERSION:
            LOGGER.warning("job_store_version_mismatch", path=str(self._path), version=payload.get("version"))
            return
        self._jobs = {item["id"]: Job.from_dict(item) for item in payload.get("jobs", [])}
        self._next_seq = int(payload.get("next_seq", len(self._jobs) + 1))
        self._signature = signature

    def _persist(self) -> None:
        if self._path is None:
            return
        payload = {
            "version": _STORE_SCHEMA_VERSION,
            "next_seq": self._next_seq,
            "jobs": [job.to_dict() for job in self._jobs.values()],
        }
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_bytes(orjson.dumps(payload))
        tmp.replace(self._path)
        stat = self._path.stat()
        self._signature = (stat.st_ino, stat.st_mtime_ns)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, status: StatusFilter = None) -> List[Job]:
        """Return snapshots of all jobs in insertion order, optionally filtered."""
        wanted = _status_set(status)
        with self._lock:
            self._refresh()
            return [
                copy.deepcopy(job)
                for job in self._jobs.values()
                if wanted is None or job.status in wanted
            ]

    def get_job(self, job_id: str) -> Job:
        with self._lock:
            self._refresh()
            return copy.deepcopy(self._require(job_id))

    def get_active_count(self) -> int:
        """Count jobs that are queued or processing."""
        with self._lock:
            self._refresh()
            return sum(1 for job in self._jobs.values() if job.status in ACTIVE_STATUSES)

    def create_job(
        self,
        submission: JobSubmission,
        *,
        batch_size: int,
        retry_of: Optional[str] = None,
    ) -> Job:
        """Allocate a fresh queued job for the submission and persist it."""
        total_batches = total_batches_for(submission.total_records, batch_size)
        with self._exclusive():
            self._refresh()
            now = self._clock()
            job = Job(
                id=f"JOB_{self._next_seq:03d}",
                type=submission.type,
                firm_id=submission.firm_id,
                firm_name=submission.firm_name,
                user_id=submission.user_id,
                user_name=submission.user_name,
                file_name=submission.file_name,
                total_records=submission.total_records,
                batch_size=batch_size,
                total_batches=total_batches,
                started_at=now,
                data=copy.deepcopy(submission.records),
                retry_of=retry_of,
                activity_log=[
                    ActivityEntry(
                        timestamp=now,
                        message=f"Job created: {submission.file_name} ({submission.total_records} records)",
                    )
                ],
            )
            self._next_seq += 1
            self._jobs[job.id] = job
            self._persist()
        LOGGER.info(
            "job_created",
            job_id=job.id,
            job_type=job.type.value,
            total_records=job.total_records,
            total_batches=job.total_batches,
        )
        return copy.deepcopy(job)

    def update_job(
        self,
        job_id: str,
        *,
        errors: Iterable[RowError] = (),
        activity: Optional[str] = None,
        expect: StatusFilter = None,
        action: str = "update",
        **changes: object,
    ) -> Job:
        """Apply a merge-patch to one job, append errors/activity, and persist.

        The patch, the appended errors and the activity entry are applied
        together or not at all. When ``expect`` is given the job must be in
        one of those statuses, otherwise nothing is written and
        ``InvalidJobStateError`` is raised; this makes status transitions an
        atomic compare-and-set.
        """
        unknown = set(changes) - _JOB_FIELDS
        if unknown:
            raise ValueError(f"unknown job fields: {sorted(unknown)}")
        frozen = set(changes) & (IMMUTABLE_FIELDS | _APPEND_ONLY_FIELDS)
        if frozen:
            raise ValueError(f"fields cannot be patched: {sorted(frozen)}")
        with self._exclusive():
            self._refresh()
            job = self._require(job_id)
            wanted = _status_set(expect)
            if wanted is not None and job.status not in wanted:
                raise InvalidJobStateError(job_id, job.status.value, action)
            processed = changes.get("processed_records", job.processed_records)
            if processed < job.processed_records:
                raise ValueError(f"processed_records cannot regress on {job_id}")
            if changes.get("current_batch", job.current_batch) < job.current_batch:
                raise ValueError(f"current_batch cannot regress on {job_id}")
            for key, value in changes.items():
                if key == "status":
                    value = JobStatus(value)
                setattr(job, key, value)
            job.errors.extend(errors)
            if activity is not None:
                job.activity_log.append(ActivityEntry(timestamp=self._clock(), message=activity))
            self._persist()
            return copy.deepcopy(job)

    def add_activity(self, job_id: str, message: str) -> Job:
        return self.update_job(job_id, activity=message)

    def append_errors(self, job_id: str, errors: Iterable[RowError], **progress: object) -> Job:
        """Append row errors, together with any progress patch, in one write."""
        return self.update_job(job_id, errors=list(errors), **progress)

    def cleanup_old_jobs(self, *, days: int = 7, now: Optional[datetime] = None) -> int:
        """Drop terminal jobs finished before the retention window."""
        cutoff = (now or self._clock()) - timedelta(days=days)
        with self._exclusive():
            self._refresh()
            stale = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status not in ACTIVE_STATUSES
                and job.completed_at is not None
                and job.completed_at <= cutoff
            ]
            for job_id in stale:
                del self._jobs[job_id]
            if stale:
                self._persist()
        LOGGER.info("jobs_cleaned_up", removed=len(stale), retention_days=days)
        return len(stale)

    def clear(self) -> None:
        """Remove every job and reset the identity sequence."""
        with self._exclusive():
            self._jobs.clear()
            self._next_seq = 1
            self._persist()
