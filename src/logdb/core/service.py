"""Service boundary of the storage core.

Exposes the database, table and record operations a front end issues, and
reports every failure as a Result value instead of raising.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .database import DatabaseManager
from .errors import InvalidRecord, IOFailure, LogDBError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from .config import StoreConfig
    from .table import Table
    from .types import Key, Record

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a service call: a value or a typed error."""

    value: T | None = None
    error: LogDBError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> str | None:
        return None if self.error is None else self.error.kind

    @property
    def message(self) -> str:
        return "" if self.error is None else str(self.error)

    def unwrap(self) -> T:
        """Return the value, raising the stored error if there is one."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


class ScanCursor:
    """Lazy ``(key, record)`` iterator that records a failure instead of raising.

    After iteration stops, ``error`` holds the error that ended it early,
    if any.
    """

    def __init__(self, rows: Iterator[tuple[Key, Record]]):
        self._rows = rows
        self.error: LogDBError | None = None

    def __iter__(self) -> Iterator[tuple[Key, Record]]:
        try:
            yield from self._rows
        except LogDBError as e:
            logger.error(f"Scan stopped early: {e}")
            self.error = e


def parse_record(record: Mapping[str, Any] | str) -> dict[str, Any]:
    """Accept a mapping or its JSON text."""
    if isinstance(record, str):
        try:
            record = json.loads(record)
        except (ValueError, RecursionError) as e:
            raise InvalidRecord(f"Record is not valid JSON: {e}") from None
    if not isinstance(record, Mapping):
        raise InvalidRecord(f"Record must be a JSON object, got {type(record).__name__}")
    return dict(record)


class StoreService:
    """Operations of the record store, with results as values.

    Args:
        config: Store configuration

    Every public method returns a Result; errors raised inside the core
    are caught here and never propagate to the caller.
    """

    def __init__(self, config: StoreConfig):
        self.config = config
        self._manager = DatabaseManager(config)

    @property
    def manager(self) -> DatabaseManager:
        return self._manager

    def _call(self, operation: str, fn: Callable[[], T]) -> Result[T]:
        try:
            return Result(value=fn())
        except LogDBError as e:
            logger.debug(f"{operation} failed: {e.kind}: {e}")
            return Result(error=e)
        except OSError as e:
            logger.debug(f"{operation} failed with OS error: {e}")
            return Result(error=IOFailure(str(e)))

    def _table(self, database: str, table: str) -> Table:
        return self._manager.open_database(database).open_table(table)

    # -- databases -------------------------------------------------------

    def create_database(self, name: str) -> Result[str]:
        def run() -> str:
            self._manager.create_database(name)
            return name

        return self._call("create_database", run)

    def delete_database(self, name: str) -> Result[str]:
        def run() -> str:
            self._manager.delete_database(name)
            return name

        return self._call("delete_database", run)

    def rename_database(self, old_name: str, new_name: str) -> Result[str]:
        def run() -> str:
            self._manager.rename_database(old_name, new_name)
            return new_name

        return self._call("rename_database", run)

    def list_database(self, name: str) -> Result[list[str]]:
        """Table names of a database (directory enumeration order)."""
        return self._call("list_database", lambda: self._manager.list_tables(name))

    def list_databases(self) -> Result[list[str]]:
        return self._call("list_databases", self._manager.list_databases)

    # -- tables ----------------------------------------------------------

    def create_table(
        self,
        database: str,
        table: str,
        key_type: str | None = None,
        key_field: str | None = None,
    ) -> Result[str]:
        def run() -> str:
            self._manager.open_database(database).create_table(table, key_type, key_field)
            return table

        return self._call("create_table", run)

    def read_table(self, database: str, table: str) -> Result[list[Record]]:
        """All records of a table in key order."""
        return self._call(
            "read_table", lambda: [record for _key, record in self._table(database, table).scan()]
        )

    def delete_table(self, database: str, table: str) -> Result[str]:
        def run() -> str:
            self._manager.open_database(database).delete_table(table)
            return table

        return self._call("delete_table", run)

    def rename_table(self, database: str, old_name: str, new_name: str) -> Result[str]:
        def run() -> str:
            self._manager.open_database(database).rename_table(old_name, new_name)
            return new_name

        return self._call("rename_table", run)

    def scan(self, database: str, table: str) -> Result[ScanCursor]:
        return self._call("scan", lambda: ScanCursor(self._table(database, table).scan()))

    def compact_table(self, database: str, table: str):
        return self._call("compact_table", lambda: self._table(database, table).compact())

    def rebuild_table(self, database: str, table: str):
        return self._call("rebuild_table", lambda: self._table(database, table).rebuild())

    def table_stats(self, database: str, table: str):
        return self._call("table_stats", lambda: self._table(database, table).stats())

    # -- records ---------------------------------------------------------

    def create_record(
        self, database: str, table: str, record: Mapping[str, Any] | str
    ) -> Result[Key]:
        """Insert a record keyed by its key field; returns the key."""

        def run() -> Key:
            handle = self._table(database, table)
            data = parse_record(record)
            key = handle.key_of(data)
            handle.insert(key, data)
            return key

        return self._call("create_record", run)

    def read_record(self, database: str, table: str, key: Key | str) -> Result[Record]:
        return self._call("read_record", lambda: self._table(database, table).get(key))

    def update_record(
        self, database: str, table: str, key: Key | str, record: Mapping[str, Any] | str
    ) -> Result[Key]:
        def run() -> Key:
            handle = self._table(database, table)
            coerced = handle.key_type.coerce(key)
            handle.update(coerced, parse_record(record))
            return coerced

        return self._call("update_record", run)

    def delete_record(self, database: str, table: str, key: Key | str) -> Result[Key]:
        def run() -> Key:
            handle = self._table(database, table)
            coerced = handle.key_type.coerce(key)
            handle.delete(coerced)
            return coerced

        return self._call("delete_record", run)

    def close(self) -> Result[None]:
        return self._call("close", self._manager.close)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
