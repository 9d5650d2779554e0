"""In-memory key index.

Maps every key of a table to the location of its latest frame. Uses
sortedcontainers.SortedDict so full-table scans come out in key order.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from sortedcontainers import SortedDict

from ..core.errors import CorruptFrame, TruncatedFrame
from ..core.types import FrameKind, IndexEntry, KeyType
from .codec import find_frame

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from ..core.types import Frame, Key
    from ..interfaces.segment import SegmentLog

logger = logging.getLogger(__name__)


@dataclass
class RebuildStats:
    """What a replay of all segments found."""

    frames: int = 0
    max_sequence: int = 0
    discarded_bytes: int = 0
    dead_bytes: dict[int, int] = field(default_factory=dict)


class Index:
    """Key to latest-frame mapping.

    Tombstoned keys stay in the mapping as entries with ``deleted=True``
    and are reported as absent by every lookup.

    Invariants:
        - Entries point at the highest-sequence frame for their key
        - Updates happen only after the frame append succeeded
        - Thread-safe via a lock that is independent of the table write lock
    """

    def __init__(self, key_type: KeyType | None = None):
        self.key_type = key_type
        self._entries: SortedDict = SortedDict()
        self._present = 0
        self._lock = threading.Lock()

    @classmethod
    def rebuild(
        cls, store: SegmentLog, key_type: KeyType | None = None
    ) -> tuple[Index, RebuildStats]:
        """Replay every frame of every segment in (segment id, offset) order.

        Later frames unconditionally replace earlier ones. A partial frame
        at the tail of the active segment is cut off; corruption anywhere
        else raises CorruptFrame.
        """
        index = cls(key_type)
        stats = RebuildStats()

        for segment_id in store.segment_ids():
            good = 0
            try:
                for offset, frame in store.iter_frames(segment_id):
                    index._replay(frame, segment_id, offset, stats)
                    good = offset + frame.length
            except CorruptFrame as e:
                if segment_id != store.active_id or not _is_torn_tail(store, segment_id, good, e):
                    raise CorruptFrame(
                        f"Segment {segment_id} is corrupt at offset {good}: {e}"
                    ) from e
                discarded = store.size_of(segment_id) - good
                logger.warning(
                    f"Discarding {discarded} bytes of partial frame at tail of segment {segment_id}"
                )
                store.truncate_tail(segment_id, good)
                stats.discarded_bytes += discarded

        logger.info(
            f"Rebuilt index: {len(index)} live keys from {stats.frames} frames "
            f"in {len(store.segment_ids())} segments"
        )
        return index, stats

    def _replay(self, frame: Frame, segment_id: int, offset: int, stats: RebuildStats) -> None:
        if self.key_type is not None and KeyType.of(frame.key) is not self.key_type:
            raise CorruptFrame(
                f"Key {frame.key!r} does not match table key type {self.key_type.value}"
            )
        deleted = frame.kind is FrameKind.TOMBSTONE
        entry = IndexEntry(segment_id, offset, frame.length, frame.sequence, deleted)
        previous = self._set(frame.key, entry)
        dead = stats.dead_bytes
        if previous is not None and not previous.deleted:
            dead[previous.segment_id] = dead.get(previous.segment_id, 0) + previous.length
        if deleted:
            dead[segment_id] = dead.get(segment_id, 0) + frame.length
        stats.frames += 1
        stats.max_sequence = max(stats.max_sequence, frame.sequence)

    def _set(self, key: Key, entry: IndexEntry) -> IndexEntry | None:
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = entry
            if previous is None or previous.deleted:
                if not entry.deleted:
                    self._present += 1
            elif entry.deleted:
                self._present -= 1
            return previous

    def lookup(self, key: Key) -> IndexEntry | None:
        """Return the entry for a present key, or None if absent."""
        entry = self._entries.get(key)
        if entry is None or entry.deleted:
            return None
        return entry

    def entry(self, key: Key) -> IndexEntry | None:
        """Return the raw entry for a key, including absent markers."""
        return self._entries.get(key)

    def put(self, key: Key, entry: IndexEntry) -> IndexEntry | None:
        """Point a key at a new write frame; returns the previous entry."""
        return self._set(key, entry._replace(deleted=False))

    def mark_deleted(self, key: Key, entry: IndexEntry) -> IndexEntry | None:
        """Record a tombstone frame for a key; returns the previous entry."""
        return self._set(key, entry._replace(deleted=True))

    def keys(self) -> set[Key]:
        """Return the set of present keys."""
        with self._lock:
            return {k for k, e in self._entries.items() if not e.deleted}

    def snapshot(self) -> list[tuple[Key, IndexEntry]]:
        """Return present ``(key, entry)`` pairs in key order."""
        with self._lock:
            return [(k, e) for k, e in self._entries.items() if not e.deleted]

    def relocate(self, moves: Mapping[Key, IndexEntry]) -> int:
        """Swap entries to new locations in one step.

        A move is skipped if the key changed since the move was planned.

        Returns:
            Number of entries moved
        """
        moved = 0
        with self._lock:
            for key, entry in moves.items():
                current = self._entries.get(key)
                if current is None or current.deleted or current.sequence != entry.sequence:
                    continue
                self._entries[key] = entry
                moved += 1
        return moved

    def drop_absent(self, segment_ids: Iterable[int]) -> int:
        """Forget absent markers whose tombstones live in the given segments."""
        doomed = set(segment_ids)
        with self._lock:
            stale = [
                k for k, e in self._entries.items() if e.deleted and e.segment_id in doomed
            ]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def referenced_segments(self) -> set[int]:
        """Return segment ids referenced by present entries."""
        with self._lock:
            return {e.segment_id for e in self._entries.values() if not e.deleted}

    def __contains__(self, key: Key) -> bool:
        return self.lookup(key) is not None

    def __len__(self) -> int:
        return self._present


def _is_torn_tail(store: SegmentLog, segment_id: int, good: int, error: CorruptFrame) -> bool:
    """Tell a torn final write apart from corruption inside the segment.

    A torn write either ends early or leaves zero-filled bytes behind, and
    no complete frame can follow it. A damaged length field also makes a
    frame look as if it ran past the end of the file, so a valid frame
    further on means the frames after the damage are committed data.
    """
    remaining = store.size_of(segment_id) - good
    tail = store.read(segment_id, good, remaining)
    if not tail.strip(b"\x00"):
        return True
    if not isinstance(error, TruncatedFrame):
        return False
    return find_frame(tail, 1) is None
