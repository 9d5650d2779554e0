"""Database directory manager.

Maps database names to directories under the storage root and table names
to subdirectories of their database. Owns no record data, only the
directory namespace and the registry of open handles.
"""

from __future__ import annotations

import logging
import os
import shutil
import threading
from contextlib import ExitStack
from pathlib import Path
from typing import TYPE_CHECKING

from .errors import AlreadyExists, InvalidName, IOFailure, NotFound
from .table import Table

if TYPE_CHECKING:
    from .config import StoreConfig
    from .types import KeyType

logger = logging.getLogger(__name__)


def validate_name(name: str, what: str = "name") -> str:
    """Check that a name is a single, plain path component."""
    if not isinstance(name, str) or not name.strip():
        raise InvalidName(f"Empty {what}")
    if name in (".", "..") or "\x00" in name:
        raise InvalidName(f"Invalid {what}: {name!r}")
    separators = {"/", "\\", os.sep} | ({os.altsep} if os.altsep else set())
    if any(sep in name for sep in separators):
        raise InvalidName(f"{what.capitalize()} must not contain path separators: {name!r}")
    return name


def _list_dirs(directory: Path) -> list[str]:
    """Subdirectory names in directory enumeration order."""
    try:
        with os.scandir(directory) as entries:
            return [e.name for e in entries if e.is_dir()]
    except FileNotFoundError:
        raise NotFound(f"Directory {directory} does not exist") from None
    except OSError as e:
        raise IOFailure(f"Failed to list {directory}: {e}") from e


def _remove_tree(directory: Path) -> None:
    try:
        shutil.rmtree(directory)
    except FileNotFoundError:
        raise NotFound(f"Directory {directory} does not exist") from None
    except OSError as e:
        raise IOFailure(f"Failed to remove {directory}: {e}") from e


class Database:
    """Handle on one database directory and its open tables.

    Args:
        directory: Database directory
        config: Store configuration
    """

    def __init__(self, directory: str | Path, config: StoreConfig):
        self.directory = Path(directory)
        self.config = config
        self._tables: dict[str, Table] = {}
        self._lock = threading.RLock()
        if not self.directory.is_dir():
            raise NotFound(f"Database {self.directory.name} does not exist")

    @property
    def name(self) -> str:
        return self.directory.name

    def _table_dir(self, name: str) -> Path:
        return self.directory / validate_name(name, "table name")

    def create_table(
        self, name: str, key_type: KeyType | str | None = None, key_field: str | None = None
    ) -> Table:
        """Create an empty table and return its open handle.

        Raises:
            AlreadyExists: If the table exists
        """
        with self._lock:
            table = Table.create(self._table_dir(name), self.config, key_type, key_field)
            self._tables[name] = table
            return table

    def open_table(self, name: str) -> Table:
        """Return the open handle for a table, opening it on first use.

        Raises:
            NotFound: If the table does not exist
        """
        with self._lock:
            table = self._tables.get(name)
            if table is None:
                directory = self._table_dir(name)
                if not directory.is_dir():
                    raise NotFound(f"Table {name} not found in database {self.name}")
                table = Table(directory, self.config)
                self._tables[name] = table
            return table

    def delete_table(self, name: str) -> None:
        """Close and remove a table with all of its segments."""
        with self._lock:
            directory = self._table_dir(name)
            if not directory.is_dir():
                raise NotFound(f"Table {name} not found in database {self.name}")
            table = self._tables.pop(name, None)
            if table is not None:
                table.close()
            _remove_tree(directory)
        logger.info(f"Deleted table {name} from database {self.name}")

    def rename_table(self, old_name: str, new_name: str) -> None:
        """Rename a table; an open handle keeps its index under the new name.

        Raises:
            NotFound: If the old table does not exist
            AlreadyExists: If the new name is taken
        """
        with self._lock:
            old_dir = self._table_dir(old_name)
            new_dir = self._table_dir(new_name)
            if not old_dir.is_dir():
                raise NotFound(f"Table {old_name} not found in database {self.name}")
            if new_dir.exists():
                raise AlreadyExists(f"Table {new_name} already exists in database {self.name}")
            table = self._tables.pop(old_name, None)
            if table is None:
                try:
                    os.rename(old_dir, new_dir)
                except OSError as e:
                    raise IOFailure(f"Failed to rename table {old_name}: {e}") from e
            else:
                try:
                    table.rename(new_dir)
                finally:
                    self._tables[table.name] = table
        logger.info(f"Renamed table {old_name} to {new_name} in database {self.name}")

    def list_tables(self) -> list[str]:
        """Table names in directory enumeration order (not sorted)."""
        return _list_dirs(self.directory)

    def open_tables(self) -> dict[str, Table]:
        with self._lock:
            return dict(self._tables)

    def move(self, new_directory: Path, timeout: float | None = None) -> None:
        """Rename the database directory while every open table is suspended."""
        with self._lock, ExitStack() as stack:
            for table in self._tables.values():
                stack.enter_context(table.suspended(timeout))
            try:
                os.rename(self.directory, new_directory)
            except OSError as e:
                raise IOFailure(f"Failed to rename database {self.name}: {e}") from e
            self.directory = Path(new_directory)
            for name, table in self._tables.items():
                table.directory = self.directory / name

    def close(self) -> None:
        with self._lock:
            for table in self._tables.values():
                table.close()
            self._tables.clear()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class DatabaseManager:
    """Namespace of databases under one storage root.

    Args:
        config: Store configuration; ``root_dir`` is created if missing

    Layout: ``<root>/<database>/<table>/segment-<id>.log``
    """

    def __init__(self, config: StoreConfig):
        self.config = config
        self.root = Path(config.root_dir)
        self._databases: dict[str, Database] = {}
        self._lock = threading.RLock()
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IOFailure(f"Failed to create storage root {self.root}: {e}") from e
        logger.info(f"Opened storage root {self.root}")

    def _db_dir(self, name: str) -> Path:
        return self.root / validate_name(name, "database name")

    def create_database(self, name: str) -> Database:
        """Create an empty database directory.

        Raises:
            AlreadyExists: If the database exists
        """
        with self._lock:
            directory = self._db_dir(name)
            try:
                directory.mkdir(exist_ok=False)
            except FileExistsError:
                raise AlreadyExists(f"Database {name} already exists") from None
            except OSError as e:
                raise IOFailure(f"Failed to create database {name}: {e}") from e
            logger.info(f"Created database {name}")
            database = Database(directory, self.config)
            self._databases[name] = database
            return database

    def open_database(self, name: str) -> Database:
        """Return the open handle for a database.

        Raises:
            NotFound: If the database does not exist
        """
        with self._lock:
            database = self._databases.get(name)
            if database is None:
                directory = self._db_dir(name)
                if not directory.is_dir():
                    raise NotFound(f"Database {name} not found")
                database = Database(directory, self.config)
                self._databases[name] = database
            return database

    def delete_database(self, name: str) -> None:
        """Close every open table of a database and remove it recursively."""
        with self._lock:
            directory = self._db_dir(name)
            if not directory.is_dir():
                raise NotFound(f"Database {name} not found")
            database = self._databases.pop(name, None)
            if database is not None:
                database.close()
            _remove_tree(directory)
        logger.info(f"Deleted database {name}")

    def rename_database(self, old_name: str, new_name: str, timeout: float | None = None) -> None:
        """Atomically rename a database directory.

        Raises:
            NotFound: If the old database does not exist
            AlreadyExists: If the new name is taken
        """
        with self._lock:
            old_dir = self._db_dir(old_name)
            new_dir = self._db_dir(new_name)
            if not old_dir.is_dir():
                raise NotFound(f"Database {old_name} not found")
            if new_dir.exists():
                raise AlreadyExists(f"Database {new_name} already exists")
            database = self._databases.pop(old_name, None)
            if database is None:
                try:
                    os.rename(old_dir, new_dir)
                except OSError as e:
                    raise IOFailure(f"Failed to rename database {old_name}: {e}") from e
            else:
                try:
                    database.move(new_dir, timeout)
                finally:
                    self._databases[database.name] = database
        logger.info(f"Renamed database {old_name} to {new_name}")

    def list_tables(self, name: str) -> list[str]:
        """Table names of a database in directory enumeration order."""
        directory = self._db_dir(name)
        if not directory.is_dir():
            raise NotFound(f"Database {name} not found")
        return _list_dirs(directory)

    def list_databases(self) -> list[str]:
        return _list_dirs(self.root)

    def close(self) -> None:
        with self._lock:
            for database in self._databases.values():
                database.close()
            self._databases.clear()
        logger.info(f"Closed storage root {self.root}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
