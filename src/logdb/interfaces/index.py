"""Protocol definition for the key index."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..core.types import IndexEntry, Key


@runtime_checkable
class KeyIndex(Protocol):
    """In-memory mapping from key to the location of its latest frame."""

    def lookup(self, key: Key) -> IndexEntry | None:
        """Return the entry for a present key, or None."""
        ...

    def put(self, key: Key, entry: IndexEntry) -> IndexEntry | None:
        """Point key at a write frame; return the previous entry."""
        ...

    def mark_deleted(self, key: Key, entry: IndexEntry) -> IndexEntry | None:
        """Record a tombstone for key; return the previous entry."""
        ...

    def keys(self) -> set[Key]:
        """Set of present keys."""
        ...

    def snapshot(self) -> list[tuple[Key, IndexEntry]]:
        """Present (key, entry) pairs in key order."""
        ...
