from typing import Dict, List

import pytest

from willbatch.jobs.cancellation import no_delay
from willbatch.jobs.models import JobType
from willbatch.jobs.service import build_service
from willbatch.jobs.settings import JobSettings
from willbatch.jobs.submission import JobSubmission


def will_record(index: int, prefix: str = "Testator") -> Dict[str, str]:
    return {
        "testatorName": f"{prefix} {index}",
        "dob": f"{(index % 28) + 1:02d}/03/1950",
        "address": f"{index} High Street, London",
        "postcode": "SW1A 1AA",
        "willLocation": "With Solicitor",
        "solicitorName": "Smith & Partners",
        "willDate": "2021-06-15",
        "executorName": "Jane Doe",
    }


def will_records(count: int, prefix: str = "Testator") -> List[Dict[str, str]]:
    return [will_record(index, prefix) for index in range(1, count + 1)]


def will_submission(records, file_name: str = "wills.csv") -> JobSubmission:
    return JobSubmission(
        type=JobType.WILL_UPLOAD,
        firm_id="FIRM_001",
        firm_name="Smith & Partners",
        user_id="USER_001",
        user_name="Alice Clerk",
        file_name=file_name,
        records=records,
    )


@pytest.fixture()
def settings(tmp_path):
    return JobSettings(data_root=tmp_path / "data", batch_size=10, batch_delay=0)


@pytest.fixture()
def service(settings):
    return build_service(settings, delay=no_delay)
