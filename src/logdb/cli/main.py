# Minimal CLI using argparse that maps commands onto StoreService calls.
from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict, is_dataclass
from pathlib import Path

from logdb.core.config import StoreConfig, load_config
from logdb.core.errors import LogDBError
from logdb.core.service import Result, StoreService

# One message per error kind
MESSAGES = {
    "AlreadyExists": "Already exists: {message}",
    "NotFound": "Not found: {message}",
    "DuplicateKey": "A record with this key already exists: {message}",
    "CorruptFrame": "Stored data is corrupt, run 'rebuild' on the table: {message}",
    "SegmentNotFound": "A segment file is missing, run 'rebuild' on the table: {message}",
    "OffsetOutOfRange": "The index points past the end of a segment, run 'rebuild': {message}",
    "LockTimeout": "The table is busy, try again: {message}",
    "IOFailure": "Filesystem error: {message}",
    "InvalidKey": "Invalid key: {message}",
    "InvalidRecord": "Invalid record: {message}",
    "InvalidName": "Invalid name: {message}",
    "TableUnusable": "Table is unusable until rebuilt: {message}",
}


def format_error(result: Result) -> str:
    template = MESSAGES.get(result.kind or "", "Error: {message}")
    return template.format(message=result.message)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="logdb", description="Log-structured JSON record store")
    p.add_argument("--root", type=Path, help="Storage root directory (default: ./data)")
    p.add_argument("--config", type=Path, help="TOML config file with a [logdb] table")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    def add(name: str, help_text: str, *args: str) -> argparse.ArgumentParser:
        cmd = sub.add_parser(name, help=help_text)
        for arg in args:
            cmd.add_argument(arg)
        return cmd

    add("create-db", "Create a database", "database")
    add("delete-db", "Delete a database and all its tables", "database")
    add("rename-db", "Rename a database", "old", "new")
    add("list-db", "List the tables of a database", "database")
    add("list-dbs", "List databases")
    create_table = add("create-table", "Create a table", "database", "table")
    create_table.add_argument("--key-type", choices=["string", "integer"], help="Key type")
    create_table.add_argument("--key-field", help="Record field holding the key (default: id)")
    add("read-table", "Print all records of a table", "database", "table")
    add("delete-table", "Delete a table", "database", "table")
    add("rename-table", "Rename a table", "database", "old", "new")
    add("create-record", "Insert a record given as JSON", "database", "table", "record")
    add("read-record", "Print one record", "database", "table", "key")
    add("update-record", "Replace a record", "database", "table", "key", "record")
    add("delete-record", "Delete a record", "database", "table", "key")
    add("compact", "Compact a table", "database", "table")
    add("rebuild", "Rebuild a table's index from its segments", "database", "table")
    add("stats", "Show table statistics", "database", "table")
    return p


def make_config(args: argparse.Namespace) -> StoreConfig:
    root = str(args.root) if args.root is not None else None
    if args.config is not None:
        return load_config(args.config, root_dir=root)
    return StoreConfig(root_dir=root or "data")


def dispatch(service: StoreService, args: argparse.Namespace) -> Result:
    c = args.command
    if c == "create-db":
        return service.create_database(args.database)
    if c == "delete-db":
        return service.delete_database(args.database)
    if c == "rename-db":
        return service.rename_database(args.old, args.new)
    if c == "list-db":
        return service.list_database(args.database)
    if c == "list-dbs":
        return service.list_databases()
    if c == "create-table":
        return service.create_table(args.database, args.table, args.key_type, args.key_field)
    if c == "read-table":
        return service.read_table(args.database, args.table)
    if c == "delete-table":
        return service.delete_table(args.database, args.table)
    if c == "rename-table":
        return service.rename_table(args.database, args.old, args.new)
    if c == "create-record":
        return service.create_record(args.database, args.table, args.record)
    if c == "read-record":
        return service.read_record(args.database, args.table, args.key)
    if c == "update-record":
        return service.update_record(args.database, args.table, args.key, args.record)
    if c == "delete-record":
        return service.delete_record(args.database, args.table, args.key)
    if c == "compact":
        return service.compact_table(args.database, args.table)
    if c == "rebuild":
        return service.rebuild_table(args.database, args.table)
    if c == "stats":
        return service.table_stats(args.database, args.table)
    raise ValueError(f"Unknown command: {c}")


def render(command: str, value) -> str:
    if command in ("list-db", "list-dbs"):
        return "\n".join(sorted(value))
    if command in ("read-table", "read-record"):
        return json.dumps(value, indent=2, sort_keys=True)
    if is_dataclass(value):
        return json.dumps(asdict(value), indent=2, sort_keys=True, default=str)
    return f"{command}: {value} ok"


def main(argv: list[str] | None = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = make_config(args)
    except (OSError, ValueError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return 2

    try:
        service = StoreService(config)
    except LogDBError as e:
        print(f"Error opening store: {e}", file=sys.stderr)
        return 1
    with service:
        result = dispatch(service, args)

    if not result.ok:
        print(format_error(result), file=sys.stderr)
        return 1
    print(render(args.command, result.value))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
