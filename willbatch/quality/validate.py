"""Record validation policies for bulk jobs."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol

import jsonschema
import orjson

from willbatch.quality.dedup import Deduplicator
from willbatch.quality.keys import search_key, will_key

SCHEMA_ROOT = Path(__file__).resolve().parent.parent / "schemas"


@dataclass
class ValidationResult:
    """Outcome of checking a payload against a JSON Schema."""

    ok: bool
    errors: List[str]


@dataclass
class ValidationOutcome:
    """Per-record verdict of a validation policy."""

    ok: bool
    reason: Optional[str] = None
    duplicate: bool = False

    @classmethod
    def success(cls) -> "ValidationOutcome":
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: str, *, duplicate: bool = False) -> "ValidationOutcome":
        return cls(ok=False, reason=reason, duplicate=duplicate)


class RecordValidator(Protocol):
    def validate(self, record: Mapping[str, object]) -> ValidationOutcome:
        ...

    def remember(self, record: Mapping[str, object]) -> None:
        """Called once the record has been committed."""
        ...


class SchemaRegistry:
    """Lazily loads JSON Schemas by name."""

    def __init__(self, root: Path = SCHEMA_ROOT) -> None:
        self._root = root
        self._cache: Dict[str, jsonschema.Draft202012Validator] = {}
        self._allowed: Dict[str, set[str]] = {}

    def _load(self, name: str) -> jsonschema.Draft202012Validator:
        if name not in self._cache:
            path = self._root / f"{name}.schema.json"
            if not path.exists():
                raise FileNotFoundError(f"Schema not found for {name}: {path}")
            schema = orjson.loads(path.read_bytes())
            self._cache[name] = jsonschema.Draft202012Validator(schema)
            self._allowed[name] = set(schema.get("properties", {}).keys())
        return self._cache[name]

    def validate(self, name: str, payload: Mapping[str, object]) -> ValidationResult:
        validator = self._load(name)
        errors = [
            f"{error.json_path}: {error.message}"
            for error in sorted(validator.iter_errors(dict(payload)), key=lambda item: item.json_path)
        ]
        return ValidationResult(ok=not errors, errors=errors)

    def prune(self, name: str, payload: Mapping[str, object]) -> Dict[str, object]:
        """Return a copy containing only fields permitted by the schema."""
        self._load(name)
        allowed = self._allowed[name]
        return {key: value for key, value in payload.items() if key in allowed}


class SchemaRecordValidator:
    """Schema check followed by duplicate detection.

    Duplicates are looked up among the rows of the same job that were
    already committed and, when ``known`` is supplied, among records
    committed by earlier jobs.
    """

    duplicate_in_job = "Duplicate of an earlier row in this upload"
    duplicate_known = "Duplicate of an existing record"

    def __init__(
        self,
        schema: str,
        *,
        key_fn: Callable[[Mapping[str, object]], str],
        registry: Optional[SchemaRegistry] = None,
        known: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._schema = schema
        self._registry = registry or SchemaRegistry()
        self._dedup = Deduplicator(key_fn)
        self._known = known

    def validate(self, record: Mapping[str, object]) -> ValidationOutcome:
        result = self._registry.validate(self._schema, record)
        if not result.ok:
            return ValidationOutcome.failure("; ".join(result.errors))
        if self._dedup.is_duplicate(record):
            return ValidationOutcome.failure(self.duplicate_in_job, duplicate=True)
        if self._known is not None and self._known(self._dedup.key_for(record)):
            return ValidationOutcome.failure(self.duplicate_known, duplicate=True)
        return ValidationOutcome.success()

    def remember(self, record: Mapping[str, object]) -> None:
        self._dedup.remember(record)


class WillRecordValidator(SchemaRecordValidator):
    duplicate_known = "Will already registered for this testator and date of birth"

    def __init__(self, *, registry: Optional[SchemaRegistry] = None, known: Optional[Callable[[str], bool]] = None) -> None:
        super().__init__("will", key_fn=will_key, registry=registry, known=known)


class SearchRecordValidator(SchemaRecordValidator):
    duplicate_in_job = "Duplicate search request in this batch"

    def __init__(self, *, registry: Optional[SchemaRegistry] = None) -> None:
        super().__init__("search", key_fn=search_key, registry=registry)
