"""logdb core package."""

from .database import Database, DatabaseManager
from .service import Result, StoreService
from .table import Table

__all__ = ["Database", "DatabaseManager", "Result", "StoreService", "Table"]
