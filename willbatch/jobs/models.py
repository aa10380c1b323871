"""Definitions for bulk upload jobs and their persisted shape."""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


class JobType(str, Enum):
    WILL_UPLOAD = "will-upload"
    SEARCH_BATCH = "search-batch"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED})

_DATETIME_FIELDS = ("started_at", "completed_at", "estimated_completion")


@dataclass
class RowError:
    """A single record that failed validation or was rejected on commit."""

    row: int
    reason: str
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ActivityEntry:
    timestamp: datetime
    message: str


def total_batches_for(total_records: int, batch_size: int) -> int:
    """Return the number of batches needed to cover ``total_records``."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return math.ceil(total_records / batch_size)


def format_duration(started_at: datetime, completed_at: datetime) -> str:
    elapsed = max(int((completed_at - started_at).total_seconds()), 0)
    minutes, seconds = divmod(elapsed, 60)
    return f"{minutes}m {seconds}s"


@dataclass
class Job:
    """Represents a bulk upload or search batch tracked through its lifecycle."""

    id: str
    type: JobType
    firm_id: str
    user_id: str
    file_name: str
    total_records: int
    batch_size: int
    total_batches: int
    started_at: datetime
    firm_name: Optional[str] = None
    user_name: Optional[str] = None
    status: JobStatus = JobStatus.QUEUED
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    current_batch: int = 0
    completed_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    duration: Optional[str] = None
    errors: List[RowError] = field(default_factory=list)
    failure_reason: Optional[str] = None
    data: Optional[List[Dict[str, Any]]] = None
    can_cancel: bool = True
    can_retry: bool = False
    cancel_requested: bool = False
    retry_of: Optional[str] = None
    activity_log: List[ActivityEntry] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def remaining_records(self) -> int:
        """Records not yet committed successfully (failed plus unprocessed)."""
        return self.total_records - self.successful_records

    @property
    def percent_complete(self) -> float:
        if self.total_records == 0:
            return 100.0 if self.is_terminal else 0.0
        return round(self.processed_records / self.total_records * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-ready representation with ISO timestamps."""
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["status"] = self.status.value
        for key in _DATETIME_FIELDS:
            value = payload[key]
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
        payload["activity_log"] = [
            {"timestamp": entry.timestamp.isoformat(), "message": entry.message}
            for entry in self.activity_log
        ]
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Job":
        data = dict(payload)
        data["type"] = JobType(data["type"])
        data["status"] = JobStatus(data["status"])
        for key in _DATETIME_FIELDS:
            if isinstance(data.get(key), str):
                data[key] = datetime.fromisoformat(data[key])
        data["errors"] = [RowError(**item) for item in data.get("errors", [])]
        data["activity_log"] = [
            ActivityEntry(timestamp=datetime.fromisoformat(item["timestamp"]), message=item["message"])
            for item in data.get("activity_log", [])
        ]
        return cls(**data)

    def summary(self) -> Dict[str, Any]:
        """Compact view used by listings; omits the source data and row errors."""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "file_name": self.file_name,
            "firm_id": self.firm_id,
            "processed_records": self.processed_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "total_records": self.total_records,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration": self.duration,
            "can_cancel": self.can_cancel,
            "can_retry": self.can_retry,
            "retry_of": self.retry_of,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
