"""Protocol definition for the segment store."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol, runtime_checkable

from ..core.types import Frame


@runtime_checkable
class SegmentLog(Protocol):
    """Append-only frame storage split into numbered segments."""

    @property
    def active_id(self) -> int:
        """Id of the segment currently accepting appends."""
        ...

    def append(self, frame: bytes) -> tuple[int, int]:
        """Append a whole frame; return (segment_id, offset).

        Invariants:
            - A reader never observes a partially written frame
            - Rolls to a new segment when the size threshold would be exceeded
        """
        ...

    def read(self, segment_id: int, offset: int, length: int) -> bytes:
        """Return bytes at a location; raise on unknown segment or range."""
        ...

    def iter_frames(self, segment_id: int) -> Iterator[tuple[int, Frame]]:
        """Iterate (offset, frame) pairs of a segment in file order."""
        ...

    def size_of(self, segment_id: int) -> int:
        """Published size of a segment in bytes."""
        ...

    def truncate_tail(self, segment_id: int, size: int) -> None:
        """Cut a partial frame off the end of the active segment."""
        ...

    def segment_ids(self) -> list[int]:
        """All segment ids in ascending order."""
        ...

    def list_sealed_segments(self) -> list[int]:
        """Sealed segment ids in ascending order, excluding the active one."""
        ...

    def delete_segment(self, segment_id: int) -> None:
        """Remove a sealed segment no index entry references."""
        ...

    def pin(self) -> int:
        """Keep the current segments readable for a snapshot; return a token."""
        ...

    def unpin(self, token: int) -> None:
        """Release a snapshot pin."""
        ...

    def retire(self, segment_ids: list[int]) -> None:
        """Take superseded segments out of the live set, keeping them readable."""
        ...

    def purge_retired(self, force: bool = False) -> list[int]:
        """Delete retired segments no pinned snapshot can still read."""
        ...

    def close(self) -> None:
        """Release file handles."""
        ...
