"""Segment store implementation.

Manages append-only segment files holding frames. The highest-id segment
is the active one; every other segment is sealed and never modified.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from ..core.errors import IOFailure, OffsetOutOfRange, SegmentNotFound
from ..core.types import SegmentInfo
from .codec import read_frame

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ..core.types import Frame

logger = logging.getLogger(__name__)

SEGMENT_PATTERN = re.compile(r"^segment-(\d+)\.log$")
TMP_SUFFIX = ".tmp"
# Lists the outputs and the superseded segments of a compaction in flight
COMPACTION_MARKER = "compaction.json"


def segment_name(segment_id: int) -> str:
    return f"segment-{segment_id:010d}.log"


def _fsync(fd: BinaryIO) -> None:
    fd.flush()
    os.fsync(fd.fileno())


class SegmentStore:
    """Append-only segment files for one table.

    Args:
        directory: Table directory holding the segment files
        max_segment_bytes: Size threshold for sealing the active segment
        fsync_every_write: Whether to fsync after each append

    Invariants:
        - Segments are discovered and ordered by numeric id
        - Only the active (highest-id) segment is ever appended to
        - A segment's published size only advances after a whole frame
          has been written and flushed
        - A retired segment stays readable until no snapshot pinned before
          its retirement is still open
    """

    def __init__(
        self,
        directory: str | Path,
        max_segment_bytes: int = 4 * 1024 * 1024,
        fsync_every_write: bool = True,
    ):
        self.directory = Path(directory)
        self.max_segment_bytes = max_segment_bytes
        self.fsync_every_write = fsync_every_write
        self._sizes: dict[int, int] = {}
        self._active_id = 0
        self._fd: BinaryIO | None = None
        # segment id -> (size, generation it was retired in)
        self._retired: dict[int, tuple[int, int]] = {}
        self._generation = 0
        self._pins: dict[int, int] = {}
        self._pin_tokens = itertools.count(1)
        self._pin_lock = threading.RLock()
        self._open_or_create()

    @classmethod
    def open(
        cls,
        directory: str | Path,
        max_segment_bytes: int = 4 * 1024 * 1024,
        fsync_every_write: bool = True,
    ) -> SegmentStore:
        """Open the segments in a directory, creating the first one if needed."""
        return cls(directory, max_segment_bytes, fsync_every_write)

    def _open_or_create(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            for path in self.directory.iterdir():
                if path.name.endswith(TMP_SUFFIX) and path.name.startswith(
                    ("segment-", COMPACTION_MARKER)
                ):
                    logger.warning(f"Discarding unfinished compaction output {path}")
                    path.unlink()
                    continue
                match = SEGMENT_PATTERN.match(path.name)
                if match:
                    self._sizes[int(match.group(1))] = path.stat().st_size
            self._recover_compaction()
        except OSError as e:
            raise IOFailure(f"Failed to open segments in {self.directory}: {e}") from e

        if not self._sizes:
            self._sizes[1] = 0
            logger.info(f"Creating first segment in {self.directory}")
        self._active_id = max(self._sizes)
        self._open_active()
        logger.debug(
            f"Opened {len(self._sizes)} segments in {self.directory}, active={self._active_id}"
        )

    def _recover_compaction(self) -> None:
        """Finish or undo a compaction interrupted after it wrote its marker.

        If every output segment was renamed into place the compaction is
        finished by removing the superseded segments; otherwise the outputs
        are removed and the old segments stay authoritative. Segments retired
        by an earlier, finished compaction are removed either way.
        """
        marker = self.directory / COMPACTION_MARKER
        if not marker.exists():
            return
        try:
            with open(marker, encoding="utf-8") as f:
                data = json.load(f)
            outputs = [int(sid) for sid in data["outputs"]]
            obsolete = [int(sid) for sid in data["obsolete"]]
            retired = [int(sid) for sid in data.get("retired", [])]
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise IOFailure(f"Invalid compaction marker {marker}: {e}") from e

        if all(sid in self._sizes for sid in outputs):
            logger.warning(f"Completing interrupted compaction in {self.directory}")
            stale = obsolete
        else:
            logger.warning(f"Rolling back interrupted compaction in {self.directory}")
            stale = outputs
        for segment_id in stale + retired:
            self.path_of(segment_id).unlink(missing_ok=True)
            self._sizes.pop(segment_id, None)
        marker.unlink()

    def _open_active(self) -> None:
        try:
            self._fd = open(self.path_of(self._active_id), "ab")
        except OSError as e:
            raise IOFailure(f"Failed to open active segment {self._active_id}: {e}") from e

    def path_of(self, segment_id: int) -> Path:
        return self.directory / segment_name(segment_id)

    @property
    def active_id(self) -> int:
        return self._active_id

    def append(self, frame: bytes) -> tuple[int, int]:
        """Append a whole frame to the active segment.

        Rolls to a new active segment first when the frame would push a
        non-empty active segment past the size threshold.

        Returns:
            (segment_id, offset) of the written frame

        Raises:
            IOFailure: If the write fails; no partial frame is published
        """
        if self._fd is None:
            raise IOFailure("Segment store is closed")

        size = self._sizes[self._active_id]
        if size > 0 and size + len(frame) > self.max_segment_bytes:
            self.roll()
            size = 0

        segment_id = self._active_id
        try:
            self._fd.write(frame)
            if self.fsync_every_write:
                _fsync(self._fd)
            else:
                self._fd.flush()
        except OSError as e:
            self._discard_tail(segment_id, size)
            raise IOFailure(f"Append to segment {segment_id} failed: {e}") from e

        self._sizes[segment_id] = size + len(frame)
        logger.debug(f"Appended {len(frame)} bytes to segment {segment_id} at {size}")
        return segment_id, size

    def _discard_tail(self, segment_id: int, size: int) -> None:
        """Cut the active segment back to its last published size."""
        fd, self._fd = self._fd, None
        try:
            if fd is not None:
                fd.close()
        except OSError as e:
            # Closing flushes the same failed buffer again
            logger.debug(f"Ignoring close error on segment {segment_id}: {e}")
        try:
            os.truncate(self.path_of(segment_id), size)
            self._open_active()
        except (OSError, IOFailure) as e:
            logger.warning(f"Could not discard partial frame in segment {segment_id}: {e}")

    def roll(self) -> int:
        """Seal the active segment and start a new one.

        Returns:
            Id of the new active segment
        """
        sealed = self._active_id
        self._seal_active()
        self._active_id = max(self._sizes) + 1
        self._sizes[self._active_id] = 0
        self._open_active()
        logger.info(f"Sealed segment {sealed}, active segment is now {self._active_id}")
        return self._active_id

    def _seal_active(self) -> None:
        if self._fd is None:
            return
        try:
            _fsync(self._fd)
            self._fd.close()
        except OSError as e:
            raise IOFailure(f"Failed to seal segment {self._active_id}: {e}") from e
        finally:
            self._fd = None

    def read(self, segment_id: int, offset: int, length: int) -> bytes:
        """Read bytes at a location within a segment.

        Raises:
            SegmentNotFound: If the segment id is unknown or its file is gone
            OffsetOutOfRange: If the range exceeds the published segment size
        """
        size = self._sizes.get(segment_id)
        if size is None:
            # Retirement publishes the entry here before leaving _sizes
            retired = self._retired.get(segment_id)
            if retired is None:
                raise SegmentNotFound(f"Segment {segment_id} not found in {self.directory}")
            size = retired[0]
        if offset < 0 or length < 0 or offset + length > size:
            raise OffsetOutOfRange(
                f"Range {offset}+{length} outside segment {segment_id} of {size} bytes"
            )
        try:
            with open(self.path_of(segment_id), "rb") as f:
                f.seek(offset)
                data = f.read(length)
        except FileNotFoundError:
            raise SegmentNotFound(f"Segment file {segment_name(segment_id)} is missing") from None
        except OSError as e:
            raise IOFailure(f"Read from segment {segment_id} failed: {e}") from e
        if len(data) < length:
            raise OffsetOutOfRange(
                f"Segment {segment_id} returned {len(data)} of {length} bytes at {offset}"
            )
        return data

    def iter_frames(self, segment_id: int) -> Iterator[tuple[int, Frame]]:
        """Iterate ``(offset, frame)`` pairs of a segment in file order.

        Raises TruncatedFrame or CorruptFrame where reading stops.
        """
        if segment_id not in self._sizes:
            raise SegmentNotFound(f"Segment {segment_id} not found in {self.directory}")
        try:
            with open(self.path_of(segment_id), "rb") as f:
                offset = 0
                while True:
                    frame = read_frame(f)
                    if frame is None:
                        break
                    yield offset, frame
                    offset += frame.length
        except FileNotFoundError:
            raise SegmentNotFound(f"Segment file {segment_name(segment_id)} is missing") from None
        except OSError as e:
            raise IOFailure(f"Scan of segment {segment_id} failed: {e}") from e

    def truncate_tail(self, segment_id: int, size: int) -> None:
        """Drop bytes past ``size`` in the active segment."""
        if segment_id != self._active_id:
            raise ValueError(f"Only the active segment can be truncated, not {segment_id}")
        logger.warning(
            f"Truncating segment {segment_id} from {self._sizes[segment_id]} to {size} bytes"
        )
        fd, self._fd = self._fd, None
        try:
            if fd is not None:
                fd.close()
            os.truncate(self.path_of(segment_id), size)
        except OSError as e:
            raise IOFailure(f"Failed to truncate segment {segment_id}: {e}") from e
        self._sizes[segment_id] = size
        self._open_active()

    # Readers call these without the table write lock, so they work on a
    # copy of _sizes taken in one step.

    def list_sealed_segments(self) -> list[int]:
        """Return sealed segment ids in ascending order."""
        active = self._active_id
        return sorted(sid for sid in list(self._sizes) if sid != active)

    def segment_ids(self) -> list[int]:
        """Return all segment ids in ascending order, active last."""
        return sorted(list(self._sizes))

    def segments(self) -> list[SegmentInfo]:
        active = self._active_id
        return [
            SegmentInfo(sid, size, sid != active)
            for sid, size in sorted(list(self._sizes.items()))
        ]

    def size_of(self, segment_id: int) -> int:
        size = self._sizes.get(segment_id)
        if size is None:
            raise SegmentNotFound(f"Segment {segment_id} not found in {self.directory}")
        return size

    def total_bytes(self) -> int:
        return sum(list(self._sizes.values()))

    def delete_segment(self, segment_id: int) -> None:
        """Remove a sealed or retired segment's file.

        Callers must ensure no index entry or open snapshot references the
        segment.
        """
        if segment_id == self._active_id:
            raise ValueError(f"Cannot delete active segment {segment_id}")
        if segment_id not in self._sizes and segment_id not in self._retired:
            raise SegmentNotFound(f"Segment {segment_id} not found in {self.directory}")
        try:
            self.path_of(segment_id).unlink(missing_ok=True)
        except OSError as e:
            raise IOFailure(f"Failed to delete segment {segment_id}: {e}") from e
        self._sizes.pop(segment_id, None)
        self._retired.pop(segment_id, None)
        logger.debug(f"Deleted segment {segment_id}")

    def pin(self) -> int:
        """Keep the segments of the current generation readable.

        Returns:
            Token to pass to ``unpin``
        """
        with self._pin_lock:
            token = next(self._pin_tokens)
            self._pins[token] = self._generation
            return token

    def unpin(self, token: int) -> None:
        """Release a pin; releasing twice is harmless."""
        with self._pin_lock:
            self._pins.pop(token, None)

    @property
    def has_retired(self) -> bool:
        return bool(self._retired)

    def retired_ids(self) -> list[int]:
        return sorted(list(self._retired))

    def retire(self, segment_ids: list[int]) -> None:
        """Take superseded sealed segments out of the live set.

        Retired segments no longer count as segments of the table but stay
        readable until ``purge_retired`` finds no older pin holding them.
        """
        with self._pin_lock:
            for segment_id in segment_ids:
                if segment_id == self._active_id:
                    raise ValueError(f"Cannot retire active segment {segment_id}")
                size = self._sizes.get(segment_id)
                if size is None:
                    raise SegmentNotFound(f"Segment {segment_id} not found in {self.directory}")
                self._retired[segment_id] = (size, self._generation)
                del self._sizes[segment_id]
            self._generation += 1

    def purge_retired(self, force: bool = False) -> list[int]:
        """Delete retired segments no open snapshot can still read.

        Args:
            force: Delete every retired segment regardless of pins

        Returns:
            Ids of the deleted segments
        """
        with self._pin_lock:
            oldest = min(self._pins.values(), default=None)
            doomed = sorted(
                sid
                for sid, (_size, generation) in self._retired.items()
                if force or oldest is None or generation < oldest
            )

        removed = []
        for segment_id in doomed:
            try:
                self.delete_segment(segment_id)
                removed.append(segment_id)
            except IOFailure as e:
                # The marker keeps listing it and the next open removes it
                logger.warning(f"Failed to delete retired segment {segment_id}: {e}")

        if self._retired:
            logger.debug(f"Keeping {len(self._retired)} retired segments for open snapshots")
        else:
            try:
                self.finish_compaction()
            except IOFailure as e:
                logger.warning(f"{e}")
        return removed

    def begin_output(self) -> SegmentOutput:
        """Start writing fresh segments above every existing id."""
        return SegmentOutput(self, max(self._sizes) + 1)

    def install_output(self, output: SegmentOutput, obsolete: list[int]) -> list[int]:
        """Publish committed output segments and start a new active segment.

        The previous active segment is sealed; the new active segment gets
        an id above every output segment. ``obsolete`` names the segments
        the output supersedes; they are removed at the next open unless
        ``finish_compaction`` is reached first.
        """
        self._seal_active()
        try:
            written = output.commit(obsolete)
        except IOFailure:
            output.abort()
            self._open_active()
            raise
        self._sizes.update(written)
        self._active_id = max(self._sizes) + 1
        self._sizes[self._active_id] = 0
        self._open_active()
        logger.info(
            f"Installed {len(written)} compacted segments, active segment is now {self._active_id}"
        )
        return sorted(written)

    def write_marker(self, outputs: list[int], obsolete: list[int]) -> None:
        """Record a compaction in flight via write-temp-then-rename.

        Segments still waiting in retirement are listed too, so a crash
        never leaves them behind to be replayed.
        """
        path = self.directory / COMPACTION_MARKER
        temp_path = path.with_name(COMPACTION_MARKER + TMP_SUFFIX)
        data = {
            "outputs": sorted(outputs),
            "obsolete": sorted(obsolete),
            "retired": self.retired_ids(),
        }
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)

    def finish_compaction(self) -> None:
        """Drop the compaction marker, keeping it only for retired segments."""
        try:
            if self._retired:
                self.write_marker([], [])
            else:
                (self.directory / COMPACTION_MARKER).unlink(missing_ok=True)
        except OSError as e:
            raise IOFailure(f"Failed to update compaction marker: {e}") from e

    def relocate(self, directory: str | Path) -> None:
        """Point the store at a renamed directory.

        The caller closes the store before renaming and calls this after.
        """
        self.directory = Path(directory)
        self._open_active()

    def sync(self) -> None:
        """Force the active segment to disk (fsync)."""
        if self._fd:
            try:
                _fsync(self._fd)
            except OSError as e:
                raise IOFailure(f"Failed to sync segment {self._active_id}: {e}") from e

    def close(self) -> None:
        """Close the active segment and release resources."""
        if self._fd:
            self._seal_active()
            logger.info(f"Closed segment store {self.directory}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class SegmentOutput:
    """Writes segments under temporary names until committed.

    Args:
        store: Owning segment store
        first_id: Id of the first output segment
    """

    def __init__(self, store: SegmentStore, first_id: int):
        self.store = store
        self._next_id = first_id
        self._sizes: dict[int, int] = {}
        self._current: int | None = None
        self._fd: BinaryIO | None = None

    def _tmp_path(self, segment_id: int) -> Path:
        return self.store.path_of(segment_id).with_name(segment_name(segment_id) + TMP_SUFFIX)

    def _start_segment(self) -> None:
        self._close_current()
        self._current = self._next_id
        self._next_id += 1
        self._sizes[self._current] = 0
        self._fd = open(self._tmp_path(self._current), "wb")

    def _close_current(self) -> None:
        if self._fd is not None:
            _fsync(self._fd)
            self._fd.close()
            self._fd = None

    def append(self, frame: bytes) -> tuple[int, int]:
        """Append a frame, rolling to a new output segment at the threshold."""
        try:
            if self._current is None or (
                self._sizes[self._current] > 0
                and self._sizes[self._current] + len(frame) > self.store.max_segment_bytes
            ):
                self._start_segment()
            assert self._fd is not None and self._current is not None
            offset = self._sizes[self._current]
            self._fd.write(frame)
        except OSError as e:
            raise IOFailure(f"Compaction output write failed: {e}") from e
        self._sizes[self._current] = offset + len(frame)
        return self._current, offset

    def commit(self, obsolete: list[int]) -> dict[int, int]:
        """Rename all output segments into place.

        The marker is written first, so an interrupted commit is either
        rolled back or completed when the store is next opened.

        Returns:
            Mapping of output segment id to size
        """
        try:
            self._close_current()
            self.store.write_marker(list(self._sizes), obsolete)
            for segment_id in sorted(self._sizes):
                os.replace(self._tmp_path(segment_id), self.store.path_of(segment_id))
            _fsync_dir(self.store.directory)
        except OSError as e:
            raise IOFailure(f"Failed to commit compaction output: {e}") from e
        return dict(self._sizes)

    def abort(self) -> None:
        """Close and remove all output files, renamed or not.

        Renamed output must not outlive a failed commit: its ids sort after
        the active segment and would shadow newer writes on replay.
        """
        try:
            if self._fd is not None:
                self._fd.close()
        except OSError as e:
            logger.debug(f"Ignoring close error on compaction output: {e}")
        finally:
            self._fd = None
        for segment_id in self._sizes:
            try:
                self._tmp_path(segment_id).unlink(missing_ok=True)
                self.store.path_of(segment_id).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove compaction output {segment_id}: {e}")
        try:
            self.store.finish_compaction()
        except IOFailure as e:
            logger.warning(f"{e}")


def _fsync_dir(directory: Path) -> None:
    """Persist renames in a directory where the platform allows it."""
    if os.name != "posix":
        return
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
