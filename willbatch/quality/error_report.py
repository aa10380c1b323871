"""Exports and summaries of per-row job errors."""
from __future__ import annotations

import csv
from collections import Counter
from pathlib import Path
from typing import Dict, Iterable, List

from willbatch.jobs.models import Job


def export_errors(job: Job, path: Path) -> Path:
    """Write the job's row errors as CSV, one line per failed record."""
    record_fields: List[str] = sorted({key for error in job.errors for key in error.data})
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(["Row", "Reason", *record_fields])
        for error in job.errors:
            writer.writerow([
                error.row,
                error.reason,
                *(error.data.get(key, "") for key in record_fields),
            ])
    return path


def default_report_path(root: Path, job: Job) -> Path:
    stem = Path(job.file_name).stem or job.id
    return root / f"{job.id}_{stem}_errors.csv"


def summarise_reasons(jobs: Iterable[Job]) -> Dict[str, int]:
    """Count row failures by reason across the supplied jobs."""
    counter: Counter[str] = Counter()
    for job in jobs:
        for error in job.errors:
            counter[error.reason] += 1
    return dict(counter.most_common())
