from typing import Optional

from .base import ALL_STORES, Storage, StoreName, Transaction
from .memory import MemoryStorage
from .sqlite import SQLiteStorage


def open_storage(db_path: Optional[str] = None) -> Storage:
    """SQLite storage when a path is given, in-memory otherwise."""
    if db_path:
        return SQLiteStorage(db_path)
    return MemoryStorage()


__all__ = [
    "ALL_STORES",
    "Storage",
    "StoreName",
    "Transaction",
    "MemoryStorage",
    "SQLiteStorage",
    "open_storage",
]
