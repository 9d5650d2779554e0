"""Compaction implementation.

Copies the live frames of a table into fresh segments and drops every
superseded write and tombstone. A background scheduler runs compactions
off the caller's thread.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .codec import decode_frame

if TYPE_CHECKING:
    from collections.abc import Callable

    from ..core.types import IndexEntry, Key
    from .index import Index
    from .segment import SegmentStore

logger = logging.getLogger(__name__)


@dataclass
class CompactionResult:
    """Outcome of one compaction run."""

    segments_removed: list[int] = field(default_factory=list)
    segments_written: list[int] = field(default_factory=list)
    bytes_before: int = 0
    bytes_after: int = 0
    live_records: int = 0
    skipped: bool = False

    @property
    def reclaimed_bytes(self) -> int:
        return max(self.bytes_before - self.bytes_after, 0)


class SegmentCompactor:
    """Rewrites live records into fresh segments.

    The caller holds the table write lock for the whole run, so the index
    snapshot cannot go stale while records are copied.

    Invariants:
        - Old segments stay authoritative until the output is committed
        - Output segments get ids above every existing segment, so replay
          still sees the newest version of each key last
        - Old segments are deleted only after the index points elsewhere
          and no scan snapshot taken before the run is still open
    """

    def compact(self, store: SegmentStore, index: Index) -> CompactionResult:
        """Perform one compaction over every segment of the table.

        Args:
            store: Segment store of the table
            index: Index of the table

        Returns:
            CompactionResult describing the run
        """
        old_ids = store.segment_ids()
        result = CompactionResult(bytes_before=store.total_bytes())
        snapshot = index.snapshot()

        logger.info(
            f"Compacting {len(old_ids)} segments ({result.bytes_before} bytes, "
            f"{len(snapshot)} live records) in {store.directory}"
        )

        output = store.begin_output()
        moves: dict[Key, IndexEntry] = {}
        try:
            for key, entry in snapshot:
                data = store.read(entry.segment_id, entry.offset, entry.length)
                # Refuse to carry corrupt bytes into the new segments
                decode_frame(data)
                segment_id, offset = output.append(data)
                moves[key] = entry._replace(segment_id=segment_id, offset=offset)
            result.segments_written = store.install_output(output, old_ids)
        except Exception:
            output.abort()
            raise

        index.relocate(moves)
        index.drop_absent(old_ids)

        # Scans pinned before this point keep reading the old segments
        store.retire(old_ids)
        result.segments_removed = store.purge_retired()

        result.bytes_after = store.total_bytes()
        result.live_records = len(moves)
        logger.info(
            f"Compaction wrote {len(result.segments_written)} segments, "
            f"reclaimed {result.reclaimed_bytes} bytes"
        )
        return result


class CompactionStatus(Enum):
    """Status of a compaction job."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class CompactionJob:
    """Represents a compaction job."""

    job_id: int
    status: CompactionStatus
    result: CompactionResult | None = None
    error: Exception | None = None
    started_at: float | None = None
    completed_at: float | None = None


class CompactionScheduler:
    """Runs compactions for one table on a background worker thread.

    Args:
        run: Callable performing one compaction step
        name: Thread name suffix for diagnostics
        history: Number of finished jobs kept for ``status`` and ``wait``

    At most one job is queued or running at a time; scheduling while one
    is outstanding returns the outstanding job's id.
    """

    def __init__(
        self, run: Callable[[], CompactionResult], name: str = "table", history: int = 100
    ):
        self._run = run
        self._queue: queue.Queue[CompactionJob | None] = queue.Queue()
        self._active_jobs: dict[int, CompactionJob] = {}
        self._completed_jobs: dict[int, CompactionJob] = {}
        self._history = max(history, 1)
        self._job_counter = 0
        self._jobs_lock = threading.Lock()
        self._shutdown = False
        self._worker_thread = threading.Thread(
            target=self._worker, daemon=True, name=f"CompactionWorker-{name}"
        )
        self._worker_thread.start()

    def schedule(self, wait: bool = False, timeout: float | None = None) -> int:
        """Schedule a compaction job.

        Args:
            wait: If True, block until the job finishes
            timeout: Maximum time to wait when ``wait`` is set

        Returns:
            Job ID for tracking
        """
        with self._jobs_lock:
            if self._shutdown:
                raise RuntimeError("Compaction scheduler is closed")
            if self._active_jobs:
                job_id = next(iter(self._active_jobs))
                logger.debug(f"Compaction job {job_id} already outstanding")
            else:
                self._job_counter += 1
                job = CompactionJob(job_id=self._job_counter, status=CompactionStatus.PENDING)
                self._active_jobs[job.job_id] = job
                job_id = job.job_id
                self._queue.put(job)
                logger.info(f"Scheduled compaction job {job_id}")

        if wait:
            self.wait(job_id, timeout)
        return job_id

    def wait(self, job_id: int, timeout: float | None = None) -> bool:
        """Wait for a job to finish.

        Returns:
            True if the job completed successfully, False on timeout or failure
        """
        deadline = time.monotonic() + timeout if timeout is not None else None

        while True:
            with self._jobs_lock:
                if job_id in self._completed_jobs:
                    return self._completed_jobs[job_id].status == CompactionStatus.COMPLETED
                if job_id not in self._active_jobs:
                    logger.warning(f"Job {job_id} not found")
                    return False

            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"Timeout waiting for compaction job {job_id}")
                return False

            time.sleep(0.01)  # 10ms poll interval

    def status(self, job_id: int) -> CompactionJob | None:
        with self._jobs_lock:
            return self._active_jobs.get(job_id) or self._completed_jobs.get(job_id)

    def pending(self) -> list[CompactionJob]:
        """List pending and running jobs."""
        with self._jobs_lock:
            return list(self._active_jobs.values())

    def _worker(self) -> None:
        logger.debug("Compaction worker started")
        while True:
            job = self._queue.get()
            if job is None:  # Shutdown signal
                break
            self._process(job)
        logger.debug("Compaction worker stopped")

    def _process(self, job: CompactionJob) -> None:
        with self._jobs_lock:
            job.status = CompactionStatus.RUNNING
            job.started_at = time.time()

        try:
            job.result = self._run()
            job.status = CompactionStatus.COMPLETED
        except Exception as e:
            logger.exception(f"Compaction job {job.job_id} failed")
            job.status = CompactionStatus.FAILED
            job.error = e
        finally:
            with self._jobs_lock:
                job.completed_at = time.time()
                self._completed_jobs[job.job_id] = job
                del self._active_jobs[job.job_id]
                while len(self._completed_jobs) > self._history:
                    del self._completed_jobs[next(iter(self._completed_jobs))]

    def close(self, timeout: float = 5.0) -> None:
        """Stop the worker after the queued jobs finish."""
        with self._jobs_lock:
            if self._shutdown:
                return
            self._shutdown = True
        self._queue.put(None)
        if self._worker_thread.is_alive() and self._worker_thread is not threading.current_thread():
            self._worker_thread.join(timeout=timeout)
            if self._worker_thread.is_alive():
                logger.warning("Compaction worker did not shut down cleanly")
