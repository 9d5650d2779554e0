"""Unit tests for the table engine."""

import random
import shutil
import tempfile
import threading
from pathlib import Path

import pytest

from logdb.components.codec import encode
from logdb.core.config import StoreConfig
from logdb.core.errors import (
    AlreadyExists,
    DuplicateKey,
    InvalidKey,
    InvalidRecord,
    LockTimeout,
    NotFound,
    SegmentNotFound,
    TableUnusable,
)
from logdb.core.table import DESCRIPTOR_NAME, Table
from logdb.core.types import KeyType
from logdb.interfaces import RecordTable


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def config(temp_dir):
    """Create a test configuration with small segments and no auto compaction."""
    return StoreConfig(
        root_dir=str(temp_dir),
        segment_max_bytes=256,
        fsync_every_write=False,
        auto_compact=False,
    )


@pytest.fixture
def table(temp_dir, config):
    """Create an integer-keyed table."""
    table = Table.create(temp_dir / "users", config)
    yield table
    table.close()


def test_record_lifecycle(table):
    """Test insert, update, delete and re-insert of one key."""
    table.insert(1, {"id": 1, "name": "John"})
    assert table.get(1) == {"id": 1, "name": "John"}

    table.update(1, {"id": 1, "name": "Jane"})
    assert table.get(1) == {"id": 1, "name": "Jane"}

    table.delete(1)
    with pytest.raises(NotFound):
        table.get(1)

    # The key was freed by the delete
    table.insert(1, {"id": 1, "name": "Jane"})
    assert table.get(1) == {"id": 1, "name": "Jane"}
    assert isinstance(table, RecordTable)


def test_duplicate_and_missing_keys(table):
    """Test the failure conditions of each write operation."""
    table.insert(1, {"id": 1})

    with pytest.raises(DuplicateKey):
        table.insert(1, {"id": 1, "again": True})
    with pytest.raises(NotFound):
        table.update(2, {"id": 2})
    with pytest.raises(NotFound):
        table.delete(2)
    with pytest.raises(NotFound):
        table.get(2)

    table.delete(1)
    with pytest.raises(NotFound):
        table.delete(1)
    with pytest.raises(NotFound):
        table.update(1, {"id": 1})


def test_failed_write_releases_lock(table):
    """Test the write lock is released when an operation fails."""
    table.insert(1, {"id": 1})
    with pytest.raises(DuplicateKey):
        table.insert(1, {"id": 1})

    assert not table._write_lock.locked()
    table.insert(2, {"id": 2})


def test_integer_keys_accept_strings(table):
    """Test string arguments are parsed for integer tables."""
    table.insert("7", {"id": "7", "name": "Seven"})

    assert table.get(7) == {"id": 7, "name": "Seven"}
    assert table.get(" 7 ") == {"id": 7, "name": "Seven"}
    assert 7 in table

    with pytest.raises(InvalidKey):
        table.get("seven")
    with pytest.raises(InvalidKey):
        table.get(True)


def test_string_keys(temp_dir, config):
    """Test a table declared with string keys."""
    table = Table.create(temp_dir / "tags", config, key_type="string", key_field="tag")

    table.insert("red", {"tag": "red", "hex": "#f00"})

    assert table.key_type is KeyType.STRING
    assert table.get("red") == {"tag": "red", "hex": "#f00"}
    with pytest.raises(InvalidKey):
        table.get(1)
    table.close()


def test_key_field_filled_and_checked(table):
    """Test the key field is added when missing and must match the key."""
    table.insert(1, {"name": "No id"})
    assert table.get(1) == {"id": 1, "name": "No id"}

    with pytest.raises(InvalidRecord):
        table.insert(2, {"id": 3})
    with pytest.raises(InvalidRecord):
        table.update(1, {"id": 2})
    with pytest.raises(InvalidRecord):
        table.insert(4, ["not", "a", "record"])


def test_unrepresentable_record_leaves_no_trace(table):
    """Test a record JSON cannot encode is rejected before anything is written."""
    with pytest.raises(InvalidRecord):
        table.insert(1, {"id": 1, "bad": float("inf")})

    assert len(table) == 0
    assert table.stats().total_bytes == 0
    table.insert(1, {"id": 1})


def test_scan_is_a_snapshot(table):
    """Test that scan reflects the index at call time only."""
    for key in (3, 1, 2):
        table.insert(key, {"id": key})

    rows = table.scan()
    table.insert(4, {"id": 4})
    table.delete(2)
    table.update(1, {"id": 1, "changed": True})

    assert list(rows) == [(1, {"id": 1}), (2, {"id": 2}), (3, {"id": 3})]
    assert [k for k, _ in table.scan()] == [1, 3, 4]
    assert table.get(1) == {"id": 1, "changed": True}


def test_reopen_preserves_view(temp_dir, config, table):
    """Test that a fresh open rebuilds the same logical view."""
    for i in range(20):
        table.insert(i, {"id": i, "n": i})
    for i in range(0, 20, 3):
        table.update(i, {"id": i, "n": -i})
    for i in range(0, 20, 5):
        table.delete(i)
    expected = dict(table.scan())
    sequence = table.stats().sequence
    table.close()

    reopened = Table(temp_dir / "users", config)

    assert dict(reopened.scan()) == expected
    assert reopened.stats().sequence == sequence
    assert reopened.stats().segments > 1
    reopened.insert(100, {"id": 100})
    assert reopened.stats().sequence == sequence + 1
    reopened.close()


def test_random_operations_match_model(table):
    """Test get after random operations equals a dict model."""
    rng = random.Random(1234)
    model = {}

    for n in range(400):
        key = rng.randrange(30)
        op = rng.random()
        if key not in model:
            table.insert(key, {"id": key, "n": n})
            model[key] = {"id": key, "n": n}
        elif op < 0.6:
            table.update(key, {"id": key, "n": n})
            model[key] = {"id": key, "n": n}
        else:
            table.delete(key)
            del model[key]

    for key in range(30):
        if key in model:
            assert table.get(key) == model[key]
        else:
            with pytest.raises(NotFound):
                table.get(key)
    assert dict(table.scan()) == model


def test_lock_timeout(table):
    """Test that a held write lock makes writers time out."""
    table.insert(1, {"id": 1})
    table._write_lock.acquire()
    try:
        with pytest.raises(LockTimeout):
            table.insert(2, {"id": 2}, timeout=0.05)
        with pytest.raises(LockTimeout):
            table.compact(timeout=0.05)
        # Readers never wait for the write lock
        assert table.get(1) == {"id": 1}
    finally:
        table._write_lock.release()

    table.insert(2, {"id": 2}, timeout=0.05)


def test_writer_waits_for_lock(table):
    """Test that a writer blocks until the lock is free when no timeout is set."""
    table._write_lock.acquire()
    done = threading.Event()

    def writer():
        table.insert(1, {"id": 1})
        done.set()

    thread = threading.Thread(target=writer)
    thread.start()
    assert not done.wait(0.1)
    table._write_lock.release()
    thread.join(timeout=5)
    assert done.is_set()
    assert table.get(1) == {"id": 1}


def test_missing_segment_marks_table_unusable(table):
    """Test a missing segment file makes the table unusable until rebuilt."""
    table.insert(1, {"id": 1})
    table._store.path_of(1).unlink()

    with pytest.raises(SegmentNotFound):
        table.get(1)
    assert table.unusable
    with pytest.raises(TableUnusable):
        table.get(1)
    with pytest.raises(TableUnusable):
        table.insert(2, {"id": 2})

    table.rebuild()

    assert not table.unusable
    with pytest.raises(NotFound):
        table.get(1)
    table.insert(2, {"id": 2})
    assert table.get(2) == {"id": 2}


def test_stats_track_dead_bytes(table):
    """Test dead bytes grow with superseded writes and tombstones."""
    table.insert(1, {"id": 1})
    first = len(encode(1, 1, {"id": 1}))
    assert table.stats().dead_bytes == 0

    table.update(1, {"id": 1, "v": 2})
    assert table.stats().dead_bytes == first

    table.delete(1)
    stats = table.stats()
    assert stats.dead_bytes == stats.total_bytes
    assert stats.live_records == 0


def test_create_existing_table_fails(temp_dir, config, table):
    """Test creating a table twice."""
    assert (temp_dir / "users" / DESCRIPTOR_NAME).exists()
    with pytest.raises(AlreadyExists):
        Table.create(temp_dir / "users", config)


def test_open_missing_table_fails(temp_dir, config):
    """Test opening a directory that does not exist."""
    with pytest.raises(NotFound):
        Table(temp_dir / "nope", config)
    with pytest.raises(NotFound):
        Table.create(temp_dir / "no-db" / "t", config)


def test_rename_keeps_index(temp_dir, table):
    """Test a rename moves the files and keeps the open table working."""
    table.insert(1, {"id": 1})

    table.rename(temp_dir / "people")

    assert table.name == "people"
    assert not (temp_dir / "users").exists()
    assert table.get(1) == {"id": 1}
    table.insert(2, {"id": 2})
    assert (temp_dir / "people" / "segment-0000000001.log").exists()


def test_closed_table_rejects_operations(table):
    """Test operations after close."""
    table.insert(1, {"id": 1})
    table.close()

    with pytest.raises(TableUnusable):
        table.get(1)
    with pytest.raises(TableUnusable):
        table.insert(2, {"id": 2})
