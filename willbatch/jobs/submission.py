"""Validated inbound submission for a bulk job."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from willbatch.jobs.models import JobType


class JobSubmission(BaseModel):
    """A bulk upload request as handed over by the upload flow."""

    type: JobType = JobType.WILL_UPLOAD
    firm_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    file_name: str = Field(min_length=1)
    firm_name: Optional[str] = None
    user_name: Optional[str] = None
    records: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def total_records(self) -> int:
        return len(self.records)
