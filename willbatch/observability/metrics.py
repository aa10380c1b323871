"""Process-local job counters and run timings, exported as JSON reports."""
from __future__ import annotations

import contextlib
import time
from collections import defaultdict
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)

COUNTERS = (
    "jobs_submitted",
    "jobs_complete",
    "jobs_failed",
    "jobs_cancelled",
    "jobs_retried",
    "batches_processed",
    "records_processed",
    "records_succeeded",
    "records_failed",
    "duplicates",
    "run_duration_ms",
)


@dataclass
class JobRunTiming:
    """Wall time of one processor run and the status it ended in."""

    job_id: str
    status: Optional[str] = None
    duration_ms: int = 0


class MetricsRegistry:
    """Job counters plus one timing entry per processed job run."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._runs: List[JobRunTiming] = []
        for key in COUNTERS:
            self._counters[key] = 0

    def incr(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def get(self, name: str) -> int:
        return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)

    def runs(self, job_id: Optional[str] = None) -> List[JobRunTiming]:
        """Timings recorded so far, optionally for one job only."""
        return [run for run in self._runs if job_id is None or run.job_id == job_id]

    def record_run(self, timing: JobRunTiming) -> None:
        # Totals per terminal status, e.g. run_duration_ms_cancelled.
        self._runs.append(timing)
        self.incr("run_duration_ms", timing.duration_ms)
        self.incr(f"run_duration_ms_{timing.status}", timing.duration_ms)

    def export(self, *, path: Path, run_id: str) -> Path:
        """Write counters and per-job timings for one CLI invocation to ``path``."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "run_id": run_id,
            "counters": self.snapshot(),
            "jobs": [asdict(run) for run in self._runs],
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        return path


@contextlib.contextmanager
def time_job_run(registry: MetricsRegistry, job_id: str) -> Iterator[JobRunTiming]:
    """Time one job run; the caller sets ``status`` once the job has finished.

    A run that raises before a status is set is recorded as ``aborted``.
    """
    timing = JobRunTiming(job_id=job_id)
    start = time.perf_counter()
    try:
        yield timing
    finally:
        timing.duration_ms = int((time.perf_counter() - start) * 1000)
        timing.status = timing.status or "aborted"
        registry.record_run(timing)
        LOGGER.info("job_run_timed", job_id=job_id, status=timing.status, duration_ms=timing.duration_ms)
