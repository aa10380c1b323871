"""Deterministic key builders for deduplication and identity."""
from __future__ import annotations

import hashlib
import re
from typing import Mapping

from dateutil import parser as dateparser

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _normalise(text: str) -> str:
    return " ".join(text.lower().split())


def normalise_date(value: str) -> str:
    """Return an ISO date for DD/MM/YYYY, DD-MM-YYYY or YYYY-MM-DD input.

    Unparseable values come back normalised but otherwise untouched, so two
    identical bad dates still produce the same key.
    """
    text = value.strip()
    try:
        if _ISO_DATE.match(text):
            return dateparser.isoparse(text).date().isoformat()
        return dateparser.parse(text, dayfirst=True).date().isoformat()
    except (ValueError, OverflowError):
        return _normalise(text)


def _digest(*parts: str) -> str:
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()


def will_key(record: Mapping[str, object]) -> str:
    name = _normalise(str(record.get("testatorName") or ""))
    dob = normalise_date(str(record.get("dob") or ""))
    return _digest(name, dob)


def search_key(record: Mapping[str, object]) -> str:
    name = _normalise(str(record.get("deceasedName") or ""))
    dob = normalise_date(str(record.get("dob") or ""))
    return _digest(name, dob)
