"""Deduplication utilities for uploaded records."""
from __future__ import annotations

from typing import Callable, Dict, Mapping


class Deduplicator:
    """Keeps track of seen records to avoid duplicates."""

    def __init__(self, key_fn: Callable[[Mapping[str, object]], str]) -> None:
        self._key_fn = key_fn
        self._seen: Dict[str, Dict[str, object]] = {}

    def key_for(self, record: Mapping[str, object]) -> str:
        """Compute the canonical deduplication key for the record."""
        return self._key_fn(record)

    def is_duplicate(self, record: Mapping[str, object]) -> bool:
        return self.key_for(record) in self._seen

    def remember(self, record: Mapping[str, object]) -> None:
        """Record the key so later occurrences are flagged."""
        self._seen[self.key_for(record)] = dict(record)

    def __len__(self) -> int:
        return len(self._seen)
