"""Polling view of active jobs for progress indicators."""
from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from willbatch.jobs.models import ACTIVE_STATUSES, Job, JobStatus
from willbatch.jobs.store import JobStore

LOGGER = structlog.get_logger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_PREVIEW_LIMIT = 3


@dataclass
class JobSummary:
    id: str
    file_name: str
    status: str
    processed_records: int
    total_records: int
    percent: float

    @classmethod
    def from_job(cls, job: Job) -> "JobSummary":
        return cls(
            id=job.id,
            file_name=job.file_name,
            status=job.status.value,
            processed_records=job.processed_records,
            total_records=job.total_records,
            percent=job.percent_complete,
        )


@dataclass
class MonitorSnapshot:
    active_count: int
    preview: List[JobSummary] = field(default_factory=list)
    overflow: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


SnapshotCallback = Callable[[MonitorSnapshot], Union[None, Awaitable[None]]]


class JobMonitor:
    """Reads the store on demand; it never mutates jobs."""

    def __init__(
        self,
        store: JobStore,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        preview_limit: int = DEFAULT_PREVIEW_LIMIT,
    ) -> None:
        self._store = store
        self._interval = interval
        self._preview_limit = preview_limit

    def snapshot(self) -> MonitorSnapshot:
        active = self._store.list_jobs(ACTIVE_STATUSES)
        # Newest first; ties keep the later-created job ahead.
        ordered = sorted(reversed(active), key=lambda job: job.started_at, reverse=True)
        preview = [JobSummary.from_job(job) for job in ordered[: self._preview_limit]]
        return MonitorSnapshot(
            active_count=len(active),
            preview=preview,
            overflow=max(len(active) - len(preview), 0),
        )

    def stats(self) -> Dict[str, int]:
        """Job counts per status, as shown on the jobs overview."""
        counts = {status.value: 0 for status in JobStatus}
        for job in self._store.list_jobs():
            counts[job.status.value] += 1
        return counts

    async def watch(self, callback: SnapshotCallback, *, ticks: Optional[int] = None) -> None:
        """Hand a fresh snapshot to ``callback`` every interval."""
        tick = 0
        while ticks is None or tick < ticks:
            result = callback(self.snapshot())
            if asyncio.iscoroutine(result):
                await result
            tick += 1
            if ticks is None or tick < ticks:
                await asyncio.sleep(self._interval)
        LOGGER.debug("monitor_stopped", ticks=tick)
