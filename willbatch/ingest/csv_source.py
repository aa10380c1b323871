"""Reading uploaded CSV files and mapping their columns onto record fields."""
from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, model_validator

from willbatch.jobs.models import JobType

SAMPLE_SIZE = 5


@dataclass(frozen=True)
class FieldSpec:
    name: str
    label: str
    required: bool
    variations: Sequence[str] = ()


WILL_FIELDS: List[FieldSpec] = [
    FieldSpec("testatorName", "Testator Full Name", True,
              ("testator name", "name", "client name", "full name", "testator", "client")),
    FieldSpec("dob", "Date of Birth", True,
              ("dob", "date of birth", "birth date", "date_birth", "birthdate")),
    FieldSpec("address", "Address", True,
              ("address", "addr", "street address", "full address", "address1")),
    FieldSpec("postcode", "Postcode", True,
              ("postcode", "post code", "postal code", "zip", "zipcode", "post_code")),
    FieldSpec("willLocation", "Will Location", True,
              ("will location", "location", "will_location", "storage location")),
    FieldSpec("solicitorName", "Solicitor Name", True,
              ("solicitor name", "solicitor", "lawyer", "attorney", "solicitor_name")),
    FieldSpec("willDate", "Will Date", True,
              ("will date", "date", "will_date", "execution date", "signed date")),
    FieldSpec("executorName", "Executor Name", False,
              ("executor name", "executor", "executor_name")),
]

SEARCH_FIELDS: List[FieldSpec] = [
    FieldSpec("deceasedName", "Deceased Full Name", True,
              ("deceased name", "name", "full name", "deceased", "deceased_name")),
    FieldSpec("dob", "Date of Birth", True,
              ("dob", "date of birth", "birth date", "date_birth", "birthdate")),
    FieldSpec("dateOfDeath", "Date of Death", False,
              ("date of death", "dod", "death date", "date_death")),
    FieldSpec("address", "Last Known Address", False,
              ("address", "last address", "last known address", "addr")),
    FieldSpec("postcode", "Postcode", False,
              ("postcode", "post code", "postal code", "zip", "zipcode", "post_code")),
]

FIELDS_BY_TYPE: Dict[JobType, List[FieldSpec]] = {
    JobType.WILL_UPLOAD: WILL_FIELDS,
    JobType.SEARCH_BATCH: SEARCH_FIELDS,
}


@dataclass
class CSVColumn:
    name: str
    index: int
    sample_values: List[str] = field(default_factory=list)


@dataclass
class ParsedCSV:
    columns: List[CSVColumn]
    rows: List[Dict[str, str]]

    @property
    def total_rows(self) -> int:
        return len(self.rows)


class ColumnMapping(BaseModel):
    """How one record field is filled from the uploaded columns.

    ``csv_column`` names a single column or, for a multi-column merge, a list
    of columns joined with ``separator``. ``fixed_value`` overrides both.
    """

    field: str
    csv_column: Union[str, List[str], None] = None
    required: bool = False
    separator: str = ", "
    fixed_value: Optional[str] = None

    @model_validator(mode="after")
    def _check_source(self) -> "ColumnMapping":
        if isinstance(self.csv_column, list) and not self.csv_column:
            raise ValueError(f"merge mapping for {self.field} lists no columns")
        return self

    @property
    def is_mapped(self) -> bool:
        return bool(self.fixed_value) or bool(self.csv_column)

    def value_for(self, row: Dict[str, str]) -> str:
        if self.fixed_value:
            return self.fixed_value
        if isinstance(self.csv_column, list):
            parts = [(row.get(column) or "").strip() for column in self.csv_column]
            return self.separator.join(part for part in parts if part)
        if self.csv_column:
            return (row.get(self.csv_column) or "").strip()
        return ""


def parse_csv(path: Path) -> ParsedCSV:
    """Read a CSV with a header row, skipping empty lines."""
    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle)
        names = [name.strip() for name in (reader.fieldnames or [])]
        rows: List[Dict[str, str]] = []
        for raw in reader:
            values = {name: (value or "") for name, value in zip(names, raw.values())}
            if not any(value.strip() for value in values.values()):
                continue
            rows.append(values)
    columns = [
        CSVColumn(
            name=name,
            index=index,
            sample_values=[row.get(name, "") for row in rows[:SAMPLE_SIZE]],
        )
        for index, name in enumerate(names)
    ]
    return ParsedCSV(columns=columns, rows=rows)


def _best_match(wanted: FieldSpec, columns: Sequence[CSVColumn], taken: set[str]) -> Optional[str]:
    terms = list(wanted.variations) or [wanted.name.lower()]
    candidates = [column for column in columns if column.name not in taken]
    # Exact header matches win over substring matches.
    for column in candidates:
        if column.name.lower().strip() in terms:
            return column.name
    for column in candidates:
        lowered = column.name.lower().strip()
        if any(term in lowered for term in terms):
            return column.name
    return None


def detect_column_mapping(columns: Sequence[CSVColumn], fields: Sequence[FieldSpec] = WILL_FIELDS) -> List[ColumnMapping]:
    """Guess which column feeds each field from common header spellings."""
    taken: set[str] = set()
    mappings: List[ColumnMapping] = []
    for wanted in fields:
        match = _best_match(wanted, columns, taken)
        if match is not None:
            taken.add(match)
        mappings.append(ColumnMapping(field=wanted.name, csv_column=match, required=wanted.required))
    return mappings


def unmapped_required(mappings: Sequence[ColumnMapping]) -> List[str]:
    return [mapping.field for mapping in mappings if mapping.required and not mapping.is_mapped]


def apply_mapping(rows: Sequence[Dict[str, str]], mappings: Sequence[ColumnMapping]) -> List[Dict[str, str]]:
    """Turn raw CSV rows into records keyed by field name.

    Unmapped fields are left out so the record validator reports them.
    """
    records: List[Dict[str, str]] = []
    for row in rows:
        record: Dict[str, str] = {}
        for mapping in mappings:
            if not mapping.is_mapped:
                continue
            record[mapping.field] = mapping.value_for(row)
        records.append(record)
    return records
