"""Registries that receive the records committed by bulk jobs."""
from __future__ import annotations

import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import orjson

from willbatch.jobs.models import Job, utc_now
from willbatch.quality.keys import search_key, will_key
from willbatch.quality.validate import SchemaRegistry


class RecordRegistry:
    """Append-only JSONL collection keyed for duplicate lookups.

    Subclasses decide how a submitted record becomes a stored entry by
    overriding ``build_entry``. Without a path the registry is in-memory.
    """

    schema: str = ""

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        key_fn: Callable[[Mapping[str, object]], str],
        schemas: Optional[SchemaRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._path = path
        self._key_fn = key_fn
        self._schemas = schemas or SchemaRegistry()
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: List[Dict[str, Any]] = []
        self._keys: set[str] = set()
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            entry = orjson.loads(line)
            self._entries.append(entry)
            self._keys.add(self._key_fn(entry))

    def contains(self, key: str) -> bool:
        return key in self._keys

    def entries(self) -> List[Dict[str, Any]]:
        return [dict(entry) for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def build_entry(self, job: Job, row: int, record: Mapping[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def commit(self, job: Job, row: int, record: Mapping[str, Any]) -> None:
        entry = self.build_entry(job, row, record)
        with self._lock:
            if self._path is not None:
                with self._path.open("ab") as handle:
                    handle.write(orjson.dumps(entry))
                    handle.write(b"\n")
            self._entries.append(entry)
            self._keys.add(self._key_fn(entry))


class WillRegistry(RecordRegistry):
    """Registered wills created by bulk uploads."""

    schema = "will"

    def __init__(self, path: Optional[Path] = None, **kwargs: Any) -> None:
        super().__init__(path, key_fn=will_key, **kwargs)

    def build_entry(self, job: Job, row: int, record: Mapping[str, Any]) -> Dict[str, Any]:
        now = self._clock().isoformat()
        registered_by = job.user_name or job.user_id
        entry = {key: value for key, value in self._schemas.prune(self.schema, record).items() if value != ""}
        entry.update({
            "id": f"WILL_{uuid.uuid4().hex[:10].upper()}",
            "certificateUrl": f"CERT-{uuid.uuid4().hex[:12]}",
            "registeredBy": registered_by,
            "registeredDate": now,
            "updatedAt": now,
            "updatedBy": registered_by,
            "version": 1,
            "firmId": job.firm_id,
            "firmName": job.firm_name,
            "registrationMethod": "bulk-firm",
            "uploadJobId": job.id,
            "uploadRow": row,
        })
        return entry


class SearchRegistry(RecordRegistry):
    """Search requests received through search batches."""

    schema = "search"

    def __init__(self, path: Optional[Path] = None, **kwargs: Any) -> None:
        super().__init__(path, key_fn=search_key, **kwargs)

    def build_entry(self, job: Job, row: int, record: Mapping[str, Any]) -> Dict[str, Any]:
        entry = {key: value for key, value in self._schemas.prune(self.schema, record).items() if value != ""}
        entry.update({
            "id": f"SEARCH_{uuid.uuid4().hex[:10].upper()}",
            "searchType": record.get("searchType") or "basic",
            "status": "received",
            "requestedBy": job.user_name or job.user_id,
            "requestedAt": self._clock().isoformat(),
            "firmId": job.firm_id,
            "batchJobId": job.id,
            "batchRow": row,
        })
        return entry
