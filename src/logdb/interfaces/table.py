"""Protocol definition for a record table."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Protocol, runtime_checkable

from ..core.types import Key, Record


@runtime_checkable
class RecordTable(Protocol):
    """Public API of a table engine."""

    def insert(self, key: Any, record: Mapping[str, Any], timeout: float | None = None) -> None:
        """Add a record; DuplicateKey if the key is present."""
        ...

    def get(self, key: Any) -> Record:
        """Return the current record; NotFound if absent."""
        ...

    def update(self, key: Any, record: Mapping[str, Any], timeout: float | None = None) -> None:
        """Replace a record; NotFound if absent."""
        ...

    def delete(self, key: Any, timeout: float | None = None) -> None:
        """Tombstone a record; NotFound if absent."""
        ...

    def scan(self) -> Iterator[tuple[Key, Record]]:
        """Iterate a snapshot of (key, record) pairs."""
        ...
