"""Path helpers for the on-disk data layout."""
from __future__ import annotations

from pathlib import Path


class DataLayout:
    """Computes structured output paths inside the data root."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.registries = root / "registries"
        self.metrics = root / "metrics"
        self.reports = root / "reports"
        for path in (root, self.registries, self.metrics, self.reports):
            path.mkdir(parents=True, exist_ok=True)

    @property
    def jobs_file(self) -> Path:
        return self.root / "jobs.json"

    @property
    def wills_file(self) -> Path:
        return self.registries / "wills.jsonl"

    @property
    def searches_file(self) -> Path:
        return self.registries / "searches.jsonl"
