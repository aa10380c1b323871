"""Typed job engine settings read from the TOML configuration."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping

from pydantic import BaseModel, Field

from willbatch.jobs.processor import DEFAULT_BATCH_DELAY, DEFAULT_BATCH_SIZE


class JobSettings(BaseModel):
    """Knobs of the batch engine, monitor and retention policy."""

    data_root: Path = Path("data")
    logging_config: Path = Path("config/logging.yaml")
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    batch_delay: float = Field(default=DEFAULT_BATCH_DELAY, ge=0)
    retention_days: int = Field(default=7, ge=0)
    poll_interval: float = Field(default=2.0, gt=0)
    preview_limit: int = Field(default=3, ge=1)

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> "JobSettings":
        """Flatten the ``[app]``, ``[jobs]`` and ``[monitor]`` tables."""
        app = settings.get("app", {})
        jobs = settings.get("jobs", {})
        monitor = settings.get("monitor", {})
        values: Dict[str, Any] = {}
        for source, keys in (
            (app, ("data_root", "logging_config")),
            (jobs, ("batch_size", "batch_delay", "retention_days")),
            (monitor, ("poll_interval", "preview_limit")),
        ):
            for key in keys:
                if key in source:
                    values[key] = source[key]
        return cls(**values)
