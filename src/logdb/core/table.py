"""Table engine.

Orchestrates the segment store, index and compactor of one table, and
enforces the single-writer/multi-reader discipline.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import weakref
from collections import defaultdict
from collections.abc import Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..components.codec import decode_frame, encode_frame
from ..components.compaction import CompactionResult, CompactionScheduler, SegmentCompactor
from ..components.index import Index
from ..components.segment import SegmentStore
from .errors import (
    FATAL_ERRORS,
    AlreadyExists,
    CorruptFrame,
    DuplicateKey,
    InvalidKey,
    InvalidRecord,
    IOFailure,
    LockTimeout,
    LogDBError,
    NotFound,
    SegmentNotFound,
    TableUnusable,
)
from .types import FrameKind, IndexEntry, Key, KeyType, Record, SegmentInfo

if TYPE_CHECKING:
    from collections.abc import Iterator

    from ..components.index import RebuildStats
    from .config import StoreConfig

logger = logging.getLogger(__name__)

DESCRIPTOR_NAME = "table.json"


@dataclass
class TableStats:
    """Point-in-time figures for a table."""

    name: str
    key_type: str
    live_records: int
    segments: int
    total_bytes: int
    sealed_bytes: int
    dead_bytes: int
    sequence: int
    unusable: bool


def write_descriptor(directory: Path, key_type: KeyType, key_field: str) -> None:
    """Write the table descriptor atomically via write-temp-then-rename."""
    path = directory / DESCRIPTOR_NAME
    temp_path = path.with_suffix(".tmp")
    with open(temp_path, "w", encoding="utf-8") as f:
        json.dump({"key_type": key_type.value, "key_field": key_field}, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(temp_path, path)


def read_descriptor(directory: Path, config: StoreConfig) -> tuple[KeyType, str]:
    """Return ``(key_type, key_field)``; config defaults when no descriptor exists."""
    path = directory / DESCRIPTOR_NAME
    if not path.exists():
        return KeyType(config.default_key_type), config.key_field
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return KeyType(data["key_type"]), str(data.get("key_field", config.key_field))
    except (KeyError, ValueError, TypeError) as e:
        raise CorruptFrame(f"Invalid table descriptor {path}: {e}") from e


class Table:
    """Log-structured table of JSON records.

    Args:
        directory: Table directory holding segments and the descriptor
        config: Store configuration
        name: Display name (defaults to the directory name)

    Public API:
        - insert(key, record): Add a new record
        - get(key): Retrieve the current record
        - update(key, record): Replace an existing record
        - delete(key): Remove a record (tombstone)
        - scan(): Iterate a snapshot of all records in key order
        - compact(): Reclaim space from dead frames
        - rebuild(): Re-read all segments after the table became unusable

    Invariants:
        - Frames are appended before the index changes
        - Sequence numbers increase with physical append order
        - Reads never take the write lock
    """

    def __init__(self, directory: str | Path, config: StoreConfig, name: str | None = None):
        self.directory = Path(directory)
        self.config = config
        self.name = name or self.directory.name
        if not self.directory.is_dir():
            raise NotFound(f"Table directory {self.directory} does not exist")

        self.key_type, self.key_field = read_descriptor(self.directory, config)
        self._write_lock = threading.Lock()
        self._settled = threading.Event()
        self._settled.set()
        self._moves = 0
        self._failure: LogDBError | None = None
        self._closed = False
        self._compactor = SegmentCompactor()
        self._scheduler: CompactionScheduler | None = None
        self.last_compaction_error: Exception | None = None
        self._open()

    @classmethod
    def create(
        cls,
        directory: str | Path,
        config: StoreConfig,
        key_type: KeyType | str | None = None,
        key_field: str | None = None,
        name: str | None = None,
    ) -> Table:
        """Create an empty table directory and open it."""
        directory = Path(directory)
        try:
            key_type = KeyType(key_type or config.default_key_type)
        except ValueError:
            raise InvalidKey(f"Unknown key type: {key_type!r}") from None
        try:
            directory.mkdir(parents=False, exist_ok=False)
        except FileExistsError:
            raise AlreadyExists(f"Table {directory.name} already exists") from None
        except FileNotFoundError:
            raise NotFound(f"Database directory {directory.parent} does not exist") from None
        except OSError as e:
            raise IOFailure(f"Failed to create table {directory}: {e}") from e
        try:
            write_descriptor(directory, key_type, key_field or config.key_field)
        except OSError as e:
            raise IOFailure(f"Failed to write descriptor for {directory}: {e}") from e
        logger.info(f"Created table {directory} with {key_type.value} keys")
        return cls(directory, config, name)

    def _open(self) -> None:
        self._store = SegmentStore.open(
            self.directory, self.config.segment_max_bytes, self.config.fsync_every_write
        )
        try:
            self._index, stats = Index.rebuild(self._store, self.key_type)
        except Exception:
            self._store.close()
            raise
        self._apply_rebuild_stats(stats)
        logger.info(f"Opened table {self.name} at {self.directory} (sequence {self._sequence})")

    def _apply_rebuild_stats(self, stats: RebuildStats) -> None:
        self._sequence = stats.max_sequence
        self._dead: defaultdict[int, int] = defaultdict(int, stats.dead_bytes)

    # -- locking ---------------------------------------------------------

    @contextmanager
    def _locked(self, timeout: float | None = None) -> Iterator[None]:
        """Hold the write lock for one step, waiting at most ``timeout``."""
        if timeout is None:
            timeout = self.config.lock_timeout_seconds
        acquired = self._write_lock.acquire() if timeout is None else self._write_lock.acquire(
            timeout=timeout
        )
        if not acquired:
            raise LockTimeout(f"Write lock on table {self.name} not acquired in {timeout}s")
        try:
            yield
        finally:
            self._write_lock.release()

    @contextmanager
    def _guarded(self) -> Iterator[None]:
        """Mark the table unusable when index and segments disagree."""
        self._check_usable()
        try:
            yield
        except FATAL_ERRORS as e:
            if self._failure is None:
                self._failure = e
                logger.error(f"Table {self.name} marked unusable: {e}")
            raise

    def _check_usable(self) -> None:
        if self._closed:
            raise TableUnusable(f"Table {self.name} is closed")
        if self._failure is not None:
            raise TableUnusable(
                f"Table {self.name} is unusable until rebuilt: {self._failure}"
            )

    @property
    def unusable(self) -> bool:
        return self._failure is not None

    # -- records ---------------------------------------------------------

    def _prepare(self, key: Key, record: Mapping[str, Any]) -> Record:
        if not isinstance(record, Mapping):
            raise InvalidRecord(f"Record must be a JSON object, got {type(record).__name__}")
        prepared = dict(record)
        if self.key_field in prepared:
            field_key = self.key_type.coerce(prepared[self.key_field])
            if field_key != key:
                raise InvalidRecord(
                    f"Record field {self.key_field}={prepared[self.key_field]!r} "
                    f"does not match key {key!r}"
                )
        prepared[self.key_field] = key
        return prepared

    def key_of(self, record: Mapping[str, Any]) -> Key:
        """Extract and coerce the key field of a record."""
        if not isinstance(record, Mapping) or self.key_field not in record:
            raise InvalidRecord(f"Record has no {self.key_field!r} field")
        return self.key_type.coerce(record[self.key_field])

    def _append(self, kind: FrameKind, key: Key, record: Record | None = None) -> IndexEntry:
        """Write one frame; must hold the write lock."""
        sequence = self._sequence + 1
        frame = encode_frame(kind, key, sequence, record)
        segment_id, offset = self._store.append(frame)
        self._sequence = sequence
        return IndexEntry(segment_id, offset, len(frame), sequence, kind is FrameKind.TOMBSTONE)

    def _account(self, previous: IndexEntry | None, entry: IndexEntry) -> None:
        if previous is not None and not previous.deleted:
            self._dead[previous.segment_id] += previous.length
        if entry.deleted:
            self._dead[entry.segment_id] += entry.length

    def insert(self, key: Any, record: Mapping[str, Any], timeout: float | None = None) -> None:
        """Add a new record.

        Raises:
            DuplicateKey: If the key is already present
        """
        key = self.key_type.coerce(key)
        record = self._prepare(key, record)
        with self._locked(timeout), self._guarded():
            if key in self._index:
                raise DuplicateKey(f"Key {key!r} already exists in table {self.name}")
            entry = self._append(FrameKind.WRITE, key, record)
            self._account(self._index.put(key, entry), entry)
        self._maybe_compact()

    def update(self, key: Any, record: Mapping[str, Any], timeout: float | None = None) -> None:
        """Replace the record stored under an existing key.

        Raises:
            NotFound: If the key is absent
        """
        key = self.key_type.coerce(key)
        record = self._prepare(key, record)
        with self._locked(timeout), self._guarded():
            if key not in self._index:
                raise NotFound(f"Key {key!r} not found in table {self.name}")
            entry = self._append(FrameKind.WRITE, key, record)
            self._account(self._index.put(key, entry), entry)
        self._maybe_compact()

    def delete(self, key: Any, timeout: float | None = None) -> None:
        """Remove a record by writing a tombstone.

        Raises:
            NotFound: If the key is absent
        """
        key = self.key_type.coerce(key)
        with self._locked(timeout), self._guarded():
            if key not in self._index:
                raise NotFound(f"Key {key!r} not found in table {self.name}")
            entry = self._append(FrameKind.TOMBSTONE, key)
            self._account(self._index.mark_deleted(key, entry), entry)
        self._maybe_compact()

    def get(self, key: Any) -> Record:
        """Return the current record for a key.

        Raises:
            NotFound: If the key is absent or deleted
        """
        key = self.key_type.coerce(key)
        with self._guarded():
            entry = self._index.lookup(key)
            if entry is None:
                raise NotFound(f"Key {key!r} not found in table {self.name}")
            record = self._read(key, entry)
            if record is None:
                raise NotFound(f"Key {key!r} not found in table {self.name}")
            return record

    def _read(self, key: Key, entry: IndexEntry, follow: bool = True) -> Record | None:
        """Read the record an entry points at.

        A compaction or rename may pull the segment away between lookup and
        read; the key is then looked up again for as long as its entry keeps
        moving. Returns None if the key vanished in between. With ``follow``
        unset the same entry is retried after a rename instead, for readers
        holding a pinned snapshot.
        """
        while True:
            moves = self._moves
            try:
                data = self._store.read(entry.segment_id, entry.offset, entry.length)
            except SegmentNotFound:
                self._settled.wait(self.config.lock_timeout_seconds)
                if not follow:
                    if moves == self._moves:
                        raise
                    continue
                current = self._index.lookup(key)
                if current is None:
                    return None
                if current == entry and moves == self._moves:
                    raise
                entry = current
                continue
            frame = decode_frame(data)
            if frame.key != key or frame.kind is not FrameKind.WRITE:
                raise CorruptFrame(
                    f"Index entry for {key!r} points at a frame for {frame.key!r}"
                )
            return frame.value

    def scan(self) -> Iterator[tuple[Key, Record]]:
        """Iterate ``(key, record)`` over a snapshot taken at call time.

        Writes made after the call are not reflected; call again for a
        fresh snapshot. The segments the snapshot points into survive any
        compaction until the iterator is exhausted, closed or collected.
        """
        self._check_usable()
        store = self._store
        token = store.pin()
        snapshot = self._index.snapshot()
        rows = self._scan_snapshot(snapshot, store, token)
        # An iterator that is never started still gives its pin back
        weakref.finalize(rows, store.unpin, token)
        return rows

    def _scan_snapshot(
        self, snapshot: list[tuple[Key, IndexEntry]], store: SegmentStore, token: int
    ) -> Iterator[tuple[Key, Record]]:
        try:
            for key, entry in snapshot:
                with self._guarded():
                    record = self._read(key, entry, follow=False)
                if record is not None:
                    yield key, record
        finally:
            store.unpin(token)
            self._purge_retired()

    def _purge_retired(self) -> None:
        """Delete segments compaction retired, unless a writer is busy."""
        if not self._store.has_retired:
            return
        try:
            with self._locked(timeout=0):
                if not self._closed:
                    self._store.purge_retired()
        except LockTimeout:
            logger.debug(f"Table {self.name} busy, deferring removal of retired segments")

    def keys(self) -> set[Key]:
        self._check_usable()
        return self._index.keys()

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, key: Any) -> bool:
        return self.key_type.coerce(key) in self._index

    # -- compaction ------------------------------------------------------

    # Writers change _dead and the segment list while readers add them up,
    # so both are copied in one step before use.

    def _sealed(self) -> list[SegmentInfo]:
        return [info for info in self._store.segments() if info.sealed]

    def dead_bytes(self, sealed_only: bool = False) -> int:
        dead = dict(self._dead)
        if sealed_only:
            return sum(dead.get(info.segment_id, 0) for info in self._sealed())
        return sum(dead.values())

    def needs_compaction(self) -> bool:
        """Whether dead bytes in sealed segments cross the configured ratio."""
        sealed = self._sealed()
        total = sum(info.size for info in sealed)
        if total == 0 or total < self.config.compaction_min_bytes:
            return False
        dead = dict(self._dead)
        sealed_dead = sum(dead.get(info.segment_id, 0) for info in sealed)
        return sealed_dead / total > self.config.compaction_dead_ratio

    def compact(self, timeout: float | None = None) -> CompactionResult:
        """Compact the table now, holding the write lock for the whole step."""
        with self._locked(timeout), self._guarded():
            return self._compact_locked()

    def _compact_locked(self) -> CompactionResult:
        if self.dead_bytes() == 0:
            total = self._store.total_bytes()
            logger.info(f"Table {self.name} has no dead bytes, skipping compaction")
            return CompactionResult(
                bytes_before=total, bytes_after=total, live_records=len(self._index), skipped=True
            )
        result = self._compactor.compact(self._store, self._index)
        self._dead = defaultdict(int)
        return result

    def _maybe_compact(self) -> None:
        """Run or schedule compaction when the dead-byte ratio calls for it."""
        self._purge_retired()
        if not self.config.auto_compact or not self.needs_compaction():
            return
        if self.config.background_compaction:
            if self._scheduler is None:
                self._scheduler = CompactionScheduler(self.compact, name=self.name)
            self._scheduler.schedule()
            return
        try:
            # Opportunistic: never wait behind another writer
            self.compact(timeout=0)
        except LockTimeout:
            logger.debug(f"Table {self.name} busy, deferring compaction")
        except LogDBError as e:
            self.last_compaction_error = e
            logger.exception(f"Automatic compaction of table {self.name} failed")

    @property
    def scheduler(self) -> CompactionScheduler | None:
        return self._scheduler

    # -- lifecycle -------------------------------------------------------

    def rebuild(self, timeout: float | None = None) -> RebuildStats:
        """Re-read every segment and replace the in-memory index.

        This is the manual recovery step for a table marked unusable.
        """
        with self._locked(timeout):
            if self._closed:
                raise TableUnusable(f"Table {self.name} is closed")
            self._store.close()
            self._store = SegmentStore.open(
                self.directory, self.config.segment_max_bytes, self.config.fsync_every_write
            )
            try:
                self._index, stats = Index.rebuild(self._store, self.key_type)
            except FATAL_ERRORS as e:
                self._failure = e
                raise
            self._apply_rebuild_stats(stats)
            self._failure = None
            logger.info(f"Rebuilt table {self.name}: {len(self._index)} live keys")
            return stats

    @contextmanager
    def suspended(self, timeout: float | None = None) -> Iterator[None]:
        """Close segment files so the table directory can be moved.

        Set ``directory`` inside the block; segments are reopened from it
        on exit. The in-memory index is kept.
        """
        with self._locked(timeout):
            self._settled.clear()
            self._moves += 1
            self._store.close()
            try:
                yield
            finally:
                self.name = self.directory.name
                self._store.relocate(self.directory)
                self._moves += 1
                self._settled.set()

    def rename(self, new_directory: str | Path, timeout: float | None = None) -> None:
        """Move the table to a new directory, keeping the open index."""
        new_directory = Path(new_directory)
        if new_directory.exists():
            raise AlreadyExists(f"Table {new_directory.name} already exists")
        with self.suspended(timeout):
            try:
                os.rename(self.directory, new_directory)
            except OSError as e:
                raise IOFailure(f"Failed to rename table {self.name}: {e}") from e
            self.directory = new_directory
        logger.info(f"Renamed table to {self.directory}")

    def stats(self) -> TableStats:
        segments = self._store.segments()
        return TableStats(
            name=self.name,
            key_type=self.key_type.value,
            live_records=len(self._index),
            segments=len(segments),
            total_bytes=sum(info.size for info in segments),
            sealed_bytes=sum(info.size for info in segments if info.sealed),
            dead_bytes=self.dead_bytes(),
            sequence=self._sequence,
            unusable=self.unusable,
        )

    def sync(self) -> None:
        self._store.sync()

    def close(self) -> None:
        """Stop background compaction and close segment files."""
        if self._closed:
            return
        if self._scheduler is not None:
            self._scheduler.close()
        with self._locked(None):
            # Open scans fail once the table is closed
            self._store.purge_retired(force=True)
            self._store.close()
            self._closed = True
        logger.info(f"Closed table {self.name}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
