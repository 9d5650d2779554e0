"""Integration tests for logdb.

Tests cover the acceptance criteria of the store:
1. Read correctness after any sequence of writes
2. Recovery from any crash point
3. Compaction validity
4. Concurrent readers alongside a writer
5. Databases and tables surviving renames and restarts
"""

import random
import shutil
import sys
import tempfile
import threading
from pathlib import Path

import pytest

from logdb import StoreConfig, StoreService, Table
from logdb.components.segment import segment_name
from logdb.core.errors import NotFound
from logdb.core.table import DESCRIPTOR_NAME


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


def _apply_random_ops(table, rng, count, keys=15):
    """Apply random writes and yield the model after each one."""
    model = {}
    for n in range(count):
        key = rng.randrange(keys)
        if key not in model:
            record = {"id": key, "n": n, "text": "x" * rng.randrange(20)}
            table.insert(key, record)
            model[key] = record
        elif rng.random() < 0.6:
            record = {"id": key, "n": n}
            table.update(key, record)
            model[key] = record
        else:
            table.delete(key)
            del model[key]
        yield dict(model)


def test_rebuild_after_any_crash_point(temp_dir):
    """Test reopening any prefix of the log gives the view at that point."""
    config = StoreConfig(
        root_dir=str(temp_dir),
        segment_max_bytes=1024 * 1024,
        fsync_every_write=False,
        auto_compact=False,
    )
    table = Table.create(temp_dir / "source", config)
    rng = random.Random(42)

    checkpoints = [(0, {})]
    for model in _apply_random_ops(table, rng, 60):
        checkpoints.append((table.stats().total_bytes, model))
    table.close()
    log = (temp_dir / "source" / segment_name(1)).read_bytes()

    for i, (size, model) in enumerate(checkpoints):
        # A clean cut at the frame boundary and a torn write just after it
        cuts = [size]
        if i + 1 < len(checkpoints):
            cuts.append(size + (checkpoints[i + 1][0] - size) // 2)
        for cut in cuts:
            crashed = temp_dir / f"crash-{i}-{cut}"
            crashed.mkdir()
            shutil.copy(temp_dir / "source" / DESCRIPTOR_NAME, crashed)
            (crashed / segment_name(1)).write_bytes(log[:cut])

            with Table(crashed, config) as recovered:
                assert dict(recovered.scan()) == model
                assert recovered.stats().total_bytes == size


def test_random_workload_survives_restarts_and_compaction(temp_dir):
    """Test the view is stable across reopen and compaction at every stage."""
    config = StoreConfig(
        root_dir=str(temp_dir),
        segment_max_bytes=300,
        fsync_every_write=False,
        compaction_min_bytes=0,
    )
    rng = random.Random(7)
    table = Table.create(temp_dir / "t", config)
    model = {}
    for _ in range(5):
        for model in _apply_random_ops(table, rng, 80):
            pass
        assert dict(table.scan()) == model
        table.close()

        table = Table(temp_dir / "t", config)
        assert dict(table.scan()) == model
        table.compact()
        assert dict(table.scan()) == model

        # Continue from the reopened state with a fresh model
        for key in list(model):
            table.delete(key)
        model = {}
    table.close()


def test_concurrent_readers_with_compacting_writer(temp_dir):
    """Test readers never see torn records or spurious misses while compaction runs."""
    config = StoreConfig(
        root_dir=str(temp_dir),
        segment_max_bytes=512,
        fsync_every_write=False,
        compaction_min_bytes=0,
    )
    table = Table.create(temp_dir / "hot", config)
    keys = list(range(20))
    for key in keys:
        table.insert(key, {"id": key, "n": 0})

    stop = threading.Event()
    errors = []

    def writer():
        try:
            for n in range(1, 400):
                key = keys[n % len(keys)]
                table.update(key, {"id": key, "n": n})
        except Exception as e:
            errors.append(e)
        finally:
            stop.set()

    def reader(seed):
        rng = random.Random(seed)
        last_seen = {}
        try:
            while not stop.is_set():
                key = rng.choice(keys)
                record = table.get(key)
                assert record["id"] == key
                # Versions of one key only move forward
                assert record["n"] >= last_seen.get(key, 0)
                last_seen[key] = record["n"]
                if rng.random() < 0.05:
                    rows = list(table.scan())
                    assert [k for k, _ in rows] == keys
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=writer)]
    threads += [threading.Thread(target=reader, args=(seed,)) for seed in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    assert not table.unusable
    assert [table.get(k)["n"] for k in keys] == [
        max(n for n in range(400) if n % len(keys) == i) for i in range(len(keys))
    ]
    table.close()


def test_service_end_to_end(temp_dir):
    """Test databases, tables and records across renames and a restart."""
    config = StoreConfig(root_dir=str(temp_dir / "data"), fsync_every_write=False)

    with StoreService(config) as service:
        for db in ("shop", "blog"):
            service.create_database(db).unwrap()
        service.create_table("shop", "orders").unwrap()
        service.create_table("blog", "posts", key_type="string", key_field="slug").unwrap()
        for i in range(1, 6):
            service.create_record("shop", "orders", f'{{"id": {i}, "total": {i * 10}}}').unwrap()
        service.create_record("blog", "posts", {"slug": "hello", "title": "Hello"}).unwrap()
        service.delete_record("shop", "orders", "3").unwrap()

        service.rename_database("shop", "store").unwrap()
        service.rename_table("store", "orders", "purchases").unwrap()
        service.update_record("store", "purchases", "5", {"id": 5, "total": 0}).unwrap()

    with StoreService(config) as service:
        assert sorted(service.list_databases().unwrap()) == ["blog", "store"]
        assert service.list_database("store").unwrap() == ["purchases"]
        assert service.read_table("store", "purchases").unwrap() == [
            {"id": 1, "total": 10},
            {"id": 2, "total": 20},
            {"id": 4, "total": 40},
            {"id": 5, "total": 0},
        ]
        assert service.read_record("blog", "posts", "hello").unwrap()["title"] == "Hello"
        assert service.read_record("store", "purchases", 3).kind == "NotFound"
        assert service.read_table("shop", "orders").kind == "NotFound"


def test_two_inserts_then_compaction(temp_dir):
    """Test compacting a table with no dead bytes keeps both records."""
    config = StoreConfig(root_dir=str(temp_dir), fsync_every_write=False)
    with Table.create(temp_dir / "t", config) as table:
        table.insert(1, {"id": 1, "name": "John"})
        table.insert(2, {"id": 2, "name": "Jane"})

        result = table.compact()

        assert result.reclaimed_bytes == 0
        assert table.get(1) == {"id": 1, "name": "John"}
        assert table.get(2) == {"id": 2, "name": "Jane"}
        with pytest.raises(NotFound):
            table.get(3)


def test_concurrent_writers_with_small_segments(temp_dir):
    """Test several writers rolling segments and compacting while stats are read."""
    config = StoreConfig(
        root_dir=str(temp_dir / "data"),
        segment_max_bytes=128,
        fsync_every_write=False,
        compaction_min_bytes=0,
    )
    service = StoreService(config)
    service.create_database("db").unwrap()
    service.create_table("db", "t").unwrap()
    table = service.manager.open_database("db").open_table("t")

    writers = 4
    per_writer = 100
    stop = threading.Event()
    errors = []

    def writer(base):
        try:
            for i in range(per_writer):
                key = base * per_writer + i
                for result in (
                    service.create_record("db", "t", {"id": key, "n": 0}),
                    service.update_record("db", "t", key, {"id": key, "n": 1}),
                ):
                    if not result.ok:
                        errors.append(result.error)
                if i % 25 == 24:
                    service.compact_table("db", "t").unwrap()
        except Exception as e:
            errors.append(e)

    def observer():
        try:
            while not stop.is_set():
                table.stats()
                table.needs_compaction()
                service.table_stats("db", "t").unwrap()
        except Exception as e:
            errors.append(e)

    switch_interval = sys.getswitchinterval()
    sys.setswitchinterval(1e-6)
    try:
        threads = [threading.Thread(target=writer, args=(n,)) for n in range(writers)]
        watcher = threading.Thread(target=observer)
        watcher.start()
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=120)
        stop.set()
        watcher.join(timeout=10)
    finally:
        sys.setswitchinterval(switch_interval)

    assert errors == []
    assert not table.unusable
    records = service.read_table("db", "t").unwrap()
    assert [r["id"] for r in records] == list(range(writers * per_writer))
    assert all(r["n"] == 1 for r in records)
    service.close()
