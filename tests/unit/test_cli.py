"""Unit tests for the command line front end."""

import json
import shutil
import tempfile
from pathlib import Path

import pytest

from logdb.cli.main import MESSAGES, format_error, main
from logdb.core.errors import LockTimeout
from logdb.core.service import Result


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    yield Path(tmpdir)
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def run(temp_dir):
    """Run the CLI against a temporary storage root."""

    def _run(*argv):
        return main(["--root", str(temp_dir / "data"), *argv])

    return _run


def test_record_commands(run, capsys):
    """Test the record cycle through the command line."""
    assert run("create-db", "company") == 0
    assert run("create-table", "company", "users") == 0
    assert run("create-record", "company", "users", '{"id": 1, "name": "John"}') == 0
    assert "create-record: 1 ok" in capsys.readouterr().out

    assert run("read-record", "company", "users", "1") == 0
    assert json.loads(capsys.readouterr().out) == {"id": 1, "name": "John"}

    assert run("update-record", "company", "users", "1", '{"id": 1, "name": "Jane"}') == 0
    capsys.readouterr()
    assert run("read-table", "company", "users") == 0
    assert json.loads(capsys.readouterr().out) == [{"id": 1, "name": "Jane"}]

    assert run("delete-record", "company", "users", "1") == 0
    assert run("read-record", "company", "users", "1") == 1
    assert capsys.readouterr().err.startswith("Not found:")


def test_listing_is_sorted(run, capsys):
    """Test list commands print one sorted name per line."""
    for name in ("b", "c", "a"):
        run("create-db", name)
    capsys.readouterr()

    assert run("list-dbs") == 0
    assert capsys.readouterr().out.split() == ["a", "b", "c"]


def test_error_exit_codes(run, capsys):
    """Test failures print a message to stderr and exit with 1."""
    run("create-db", "shop")
    capsys.readouterr()

    assert run("create-db", "shop") == 1
    assert capsys.readouterr().err.startswith("Already exists:")
    assert run("create-table", "shop", "t", "--key-type", "string") == 0
    assert run("create-record", "shop", "t", "not json") == 1
    assert capsys.readouterr().err.startswith("Invalid record:")


def test_stats_prints_json(run, capsys):
    """Test dataclass results are printed as JSON."""
    run("create-db", "shop")
    run("create-table", "shop", "t")
    run("create-record", "shop", "t", '{"id": 1}')
    capsys.readouterr()

    assert run("stats", "shop", "t") == 0
    stats = json.loads(capsys.readouterr().out)
    assert stats["live_records"] == 1
    assert stats["key_type"] == "integer"


def test_missing_config_file(temp_dir, capsys):
    """Test a config error exits with 2."""
    assert main(["--config", str(temp_dir / "missing.toml"), "list-dbs"]) == 2
    assert "Error loading config" in capsys.readouterr().err


def test_config_file(temp_dir, capsys):
    """Test the storage root is read from the config file."""
    path = temp_dir / "logdb.toml"
    path.write_text(f'[logdb]\nroot_dir = "{temp_dir / "from-file"}"\n')

    assert main(["--config", str(path), "create-db", "x"]) == 0
    assert (temp_dir / "from-file" / "x").is_dir()


def test_messages_are_distinct():
    """Test every error kind maps to its own message."""
    assert len(set(MESSAGES.values())) == len(MESSAGES)
    assert format_error(Result(error=LockTimeout("held"))) == "The table is busy, try again: held"
